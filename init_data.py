from datetime import datetime, timedelta
from decimal import Decimal
from crowdfund import create_app
from crowdfund.extensions import db
from crowdfund.models import (
    ImageType,
    Project,
    ProjectCategory,
    ProjectGoal,
    ProjectImage,
    ProjectStatus,
    ProjectTag,
    ProjectTagRelation,
    User,
    UserRole,
)

app = create_app()

with app.app_context():
    db.create_all()

    # Create initial categories
    categories_data = [
        "Technology",
        "Design",
        "Games",
        "Music",
        "Film",
        "Publishing",
        "Food",
        "Community",
    ]

    categories_dict = {}
    for name in categories_data:
        existing = ProjectCategory.query.filter_by(name=name).first()
        if not existing:
            category = ProjectCategory(name=name)
            db.session.add(category)
            db.session.flush()
            categories_dict[name] = category
            print(f"Created category: {name}")
        else:
            categories_dict[name] = existing

    tags_data = ["eco-friendly", "open-source", "handmade", "limited", "local"]
    tags_dict = {}
    for name in tags_data:
        existing = ProjectTag.query.filter_by(name=name).first()
        if not existing:
            tag = ProjectTag(name=name)
            db.session.add(tag)
            db.session.flush()
            tags_dict[name] = tag
            print(f"Created tag: {name}")
        else:
            tags_dict[name] = existing

    # Create admin account (if not exists)
    admin_email = app.config["ADMIN_EMAIL"]
    admin = User.query.filter_by(email=admin_email).first()
    if not admin:
        admin = User(
            username=app.config["ADMIN_USERNAME"],
            email=admin_email,
            role=UserRole.ADMIN,
            is_verified=True,
        )
        admin.set_password(app.config["ADMIN_PASSWORD"])
        db.session.add(admin)
        db.session.flush()
        print(
            f"Created admin account: {admin_email} / "
            f"{app.config['ADMIN_PASSWORD']}")

    # Create a demo creator with a few active projects
    creator_email = "creator@example.com"
    creator = User.query.filter_by(email=creator_email).first()
    if not creator:
        creator = User(
            username="creator",
            email=creator_email,
            role=UserRole.USER,
            is_verified=True,
        )
        creator.set_password("Creator@12345")
        db.session.add(creator)
        db.session.flush()
        print(f"Created creator account: {creator_email} / Creator@12345")

    projects_data = [
        {
            "title": "Solar Powered Backpack",
            "description": "A backpack that charges your phone on the go.",
            "category": "Technology",
            "days": 30,
            "min_reward_amount": "49.00",
            "goals": [("5000.00", "Production run"), ("12000.00", "Colors")],
            "tags": ["eco-friendly"],
        },
        {
            "title": "Hand-bound Poetry Collection",
            "description": "Fifty poems printed and bound by hand.",
            "category": "Publishing",
            "days": 45,
            "min_reward_amount": "20.00",
            "goals": [("1500.00", "First edition")],
            "tags": ["handmade", "limited"],
        },
        {
            "title": "Neighborhood Tool Library",
            "description": "Shared tools for everyone on the block.",
            "category": "Community",
            "days": 20,
            "min_reward_amount": "10.00",
            "goals": [("800.00", "Starter kit"), ("2000.00", "Workshop")],
            "tags": ["local", "open-source"],
        },
    ]

    for data in projects_data:
        if Project.query.filter_by(title=data["title"]).first():
            continue
        goals = [Decimal(amount) for amount, _ in data["goals"]]
        project = Project(
            title=data["title"],
            description=data["description"],
            creator_id=creator.id,
            status=ProjectStatus.ACTIVE,
            total_amount=Decimal("0"),
            total_goal_amount=sum(goals),
            progress=0,
            min_reward_amount=Decimal(data["min_reward_amount"]),
            end_date=datetime.utcnow() + timedelta(days=data["days"]),
            category_id=categories_dict[data["category"]].id,
        )
        db.session.add(project)
        db.session.flush()

        for amount, description in data["goals"]:
            db.session.add(ProjectGoal(
                project_id=project.id,
                amount=Decimal(amount),
                description=description,
            ))
        db.session.add(ProjectImage(
            project_id=project.id,
            image_url="https://placehold.co/800x450",
            is_primary=True,
            image_type=ImageType.MAIN,
        ))
        for tag_name in data["tags"]:
            db.session.add(ProjectTagRelation(
                project_id=project.id,
                tag_id=tags_dict[tag_name].id,
            ))
        print(f"Created project: {data['title']}")

    db.session.commit()
    print("Database initialized")
