from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3f2a9c1d7b10"
down_revision = None
branch_labels = None
depends_on = None

# Enum columns store member names.
user_role = sa.Enum("USER", "ADMIN", name="userrole")
project_status = sa.Enum(
    "PENDING_REVIEW", "ACTIVE", "COMPLETED", "FAILED", "REJECTED",
    name="projectstatus")
image_type = sa.Enum("MAIN", "LONG", "GOAL", name="imagetype")
pledge_status = sa.Enum("PENDING", "PAID", name="pledgestatus")
order_status = sa.Enum(
    "PENDING", "PAID", "SHIPPED", "CROWDFUNDING_FAILED", "REFUNDED",
    "REFUND_REJECTED", name="orderstatus")
refund_status = sa.Enum("PENDING", "APPROVED", "REJECTED", name="refundstatus")
shipment_status = sa.Enum(
    "NOT_SHIPPED", "SHIPPED", "DELIVERED", name="shipmentstatus")


def _timestamps(updated=True):
    columns = [sa.Column("created_at", sa.DateTime(), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(), nullable=False))
    return columns


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("avatar_url", sa.String(length=500), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_username", ["username"], unique=True)
        batch_op.create_index("ix_users_email", ["email"], unique=True)

    op.create_table(
        "user_addresses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False),
        sa.Column("receiver_name", sa.String(length=50), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("province", sa.String(length=50), nullable=False),
        sa.Column("city", sa.String(length=50), nullable=False),
        sa.Column("district", sa.String(length=50), nullable=False),
        sa.Column("detail_address", sa.Text(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_user_addresses_user_id", "user_addresses", ["user_id"])

    op.create_table(
        "project_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        *_timestamps(updated=False),
    )
    op.create_table(
        "project_tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        *_timestamps(updated=False),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column(
            "creator_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column("status", project_status, nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_goal_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("progress", sa.Float(), nullable=False),
        sa.Column("min_reward_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("project_categories.id", ondelete="SET NULL"),
            nullable=True),
        sa.Column("review_comment", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total_amount >= 0", name="check_total_amount"),
        sa.CheckConstraint(
            "min_reward_amount >= 0", name="check_min_reward_amount"),
    )
    op.create_index("ix_projects_creator_id", "projects", ["creator_id"])
    op.create_index("ix_projects_status", "projects", ["status"])
    op.create_index("ix_projects_end_date", "projects", ["end_date"])

    op.create_table(
        "project_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.CheckConstraint("amount > 0", name="check_goal_amount_positive"),
    )
    op.create_index(
        "ix_project_goals_project_id", "project_goals", ["project_id"])

    op.create_table(
        "project_images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column(
            "goal_id",
            sa.Integer(),
            sa.ForeignKey("project_goals.id"),
            nullable=True),
        sa.Column("image_url", sa.String(length=500), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("image_type", image_type, nullable=False),
    )
    op.create_index(
        "ix_project_images_project_id", "project_images", ["project_id"])

    op.create_table(
        "project_tag_relations",
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            primary_key=True),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("project_tags.id"),
            primary_key=True),
        *_timestamps(updated=False),
    )

    op.create_table(
        "project_updates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_project_updates_project_id", "project_updates", ["project_id"])

    op.create_table(
        "project_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_project_comments_project_id", "project_comments", ["project_id"])

    op.create_table(
        "pledges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", pledge_status, nullable=False),
        sa.Column(
            "address_id",
            sa.Integer(),
            sa.ForeignKey("user_addresses.id", ondelete="SET NULL"),
            nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("amount > 0", name="check_pledge_amount_positive"),
    )
    op.create_index("ix_pledges_user_id", "pledges", ["user_id"])
    op.create_index("ix_pledges_project_id", "pledges", ["project_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column(
            "pledge_id",
            sa.Integer(),
            sa.ForeignKey("pledges.id"),
            nullable=False,
            unique=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("is_reward", sa.Boolean(), nullable=False),
        sa.Column(
            "address_id",
            sa.Integer(),
            sa.ForeignKey("user_addresses.id", ondelete="SET NULL"),
            nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index(
            "ix_orders_order_number", ["order_number"], unique=True)
        batch_op.create_index("ix_orders_user_id", ["user_id"])
        batch_op.create_index("ix_orders_project_id", ["project_id"])
        batch_op.create_index("ix_orders_status", ["status"])

    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id"),
            nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", refund_status, nullable=False),
        sa.Column("admin_comment", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_refund_requests_order_id", "refund_requests", ["order_id"])
    op.create_index(
        "ix_refund_requests_user_id", "refund_requests", ["user_id"])
    # At most one pending request per order
    op.create_index(
        "uq_refund_requests_pending_order",
        "refund_requests",
        ["order_id"],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"))

    op.create_table(
        "shipments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id"),
            nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id"),
            nullable=False,
            unique=True),
        sa.Column(
            "address_id",
            sa.Integer(),
            sa.ForeignKey("user_addresses.id", ondelete="SET NULL"),
            nullable=True),
        sa.Column("status", shipment_status, nullable=False),
        sa.Column("tracking_number", sa.String(length=100), nullable=True),
        sa.Column("carrier", sa.String(length=50), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_shipments_project_id", "shipments", ["project_id"])

    op.create_table(
        "posts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_posts_user_id", "posts", ["user_id"])
    op.create_index("ix_posts_created_at", "posts", ["created_at"])

    op.create_table(
        "post_images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            nullable=False),
        sa.Column("image_url", sa.String(length=500), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_post_images_post_id", "post_images", ["post_id"])

    op.create_table(
        "comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("comments.id", ondelete="CASCADE"),
            nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_comments_post_id", "comments", ["post_id"])
    op.create_index("ix_comments_parent_id", "comments", ["parent_id"])

    op.create_table(
        "likes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "post_id", name="uq_user_post_like"),
    )
    op.create_index("ix_likes_post_id", "likes", ["post_id"])

    op.create_table(
        "follows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "follower_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        sa.Column(
            "followed_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "follower_id", "followed_id", name="uq_follower_followed"),
        sa.CheckConstraint(
            "follower_id != followed_id", name="check_no_self_follow"),
    )
    op.create_index("ix_follows_follower_id", "follows", ["follower_id"])
    op.create_index("ix_follows_followed_id", "follows", ["followed_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "actor_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True),
        sa.Column("actor_role", sa.String(length=20), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("target_type", sa.String(length=50), nullable=True),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("ip", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade():
    for table in (
        "audit_logs",
        "follows",
        "likes",
        "comments",
        "post_images",
        "posts",
        "shipments",
        "refund_requests",
        "orders",
        "pledges",
        "project_comments",
        "project_updates",
        "project_tag_relations",
        "project_images",
        "project_goals",
        "projects",
        "project_tags",
        "project_categories",
        "user_addresses",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (
        shipment_status,
        refund_status,
        order_status,
        pledge_status,
        image_type,
        project_status,
        user_role,
    ):
        enum_type.drop(bind, checkfirst=True)
