from crowdfund.extensions import db
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
from sqlalchemy import CheckConstraint, UniqueConstraint, text
import enum
import json


class UserRole(enum.Enum):
    USER = 'user'
    ADMIN = 'admin'


class ProjectStatus(enum.Enum):
    PENDING_REVIEW = 'pending_review'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REJECTED = 'rejected'


class ImageType(enum.Enum):
    MAIN = 'main'
    LONG = 'long'
    GOAL = 'goal'


class PledgeStatus(enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'


class OrderStatus(enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    SHIPPED = 'shipped'
    CROWDFUNDING_FAILED = 'crowdfunding_failed'
    REFUNDED = 'refunded'
    REFUND_REJECTED = 'refund_rejected'


class RefundStatus(enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ShipmentStatus(enum.Enum):
    NOT_SHIPPED = 'not_shipped'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'


# Project statuses the expiry sweep never touches.
TERMINAL_PROJECT_STATUSES = (
    ProjectStatus.FAILED,
    ProjectStatus.COMPLETED,
    ProjectStatus.REJECTED,
)

# Orders that still hold money for a project.
OPEN_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PAID)


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(
        db.String(50),
        unique=True,
        nullable=False,
        index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    avatar_url = db.Column(db.String(500), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    role = db.Column(
        db.Enum(UserRole),
        nullable=False,
        default=UserRole.USER)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)
    # Soft delete marker
    deleted_at = db.Column(db.DateTime, nullable=True)

    addresses = db.relationship(
        'UserAddress',
        backref='user',
        lazy='dynamic',
        cascade='all, delete-orphan')
    projects = db.relationship(
        'Project',
        backref='creator',
        lazy='dynamic')
    orders = db.relationship('Order', backref='user', lazy='dynamic')
    posts = db.relationship('Post', backref='author', lazy='dynamic')

    @property
    def is_active(self):
        return self.deleted_at is None

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f'<User {self.username}>'


class UserAddress(db.Model):
    __tablename__ = 'user_addresses'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    receiver_name = db.Column(db.String(50), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    province = db.Column(db.String(50), nullable=False)
    city = db.Column(db.String(50), nullable=False)
    district = db.Column(db.String(50), nullable=False)
    detail_address = db.Column(db.Text, nullable=False)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    @property
    def full_address(self):
        return (
            f'{self.province} {self.city} {self.district} '
            f'{self.detail_address}'
        )

    def __repr__(self):
        return f'<UserAddress {self.id} for user {self.user_id}>'


class ProjectCategory(db.Model):
    __tablename__ = 'project_categories'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<ProjectCategory {self.name}>'


class ProjectTag(db.Model):
    __tablename__ = 'project_tags'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<ProjectTag {self.name}>'


class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    creator_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    status = db.Column(
        db.Enum(ProjectStatus),
        nullable=False,
        default=ProjectStatus.PENDING_REVIEW,
        index=True)
    # Pledged so far
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    # Sum of all goal amounts
    total_goal_amount = db.Column(
        db.Numeric(12, 2),
        nullable=False,
        default=0)
    # Percent of total_goal_amount
    progress = db.Column(db.Float, nullable=False, default=0)
    min_reward_amount = db.Column(
        db.Numeric(12, 2),
        nullable=False,
        default=0)
    end_date = db.Column(db.DateTime, nullable=False, index=True)
    category_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'project_categories.id',
            ondelete='SET NULL'),
        nullable=True)
    review_comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    category = db.relationship('ProjectCategory')
    goals = db.relationship(
        'ProjectGoal',
        backref='project',
        order_by='ProjectGoal.amount',
        lazy='dynamic')
    images = db.relationship(
        'ProjectImage',
        backref='project',
        order_by='ProjectImage.id',
        lazy='dynamic')
    updates = db.relationship(
        'ProjectUpdate',
        backref='project',
        lazy='dynamic')
    comments = db.relationship(
        'ProjectComment',
        backref='project',
        lazy='dynamic')
    tags = db.relationship(
        'ProjectTag',
        secondary='project_tag_relations',
        lazy='dynamic',
        viewonly=True)

    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='check_total_amount'),
        CheckConstraint(
            'min_reward_amount >= 0',
            name='check_min_reward_amount'),
    )

    def __repr__(self):
        return f'<Project {self.id} {self.title}>'


class ProjectGoal(db.Model):
    __tablename__ = 'project_goals'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.Text, nullable=True)

    images = db.relationship('ProjectImage', lazy='dynamic')

    __table_args__ = (
        CheckConstraint('amount > 0', name='check_goal_amount_positive'),
    )

    def __repr__(self):
        return f'<ProjectGoal {self.id} amount={self.amount}>'


class ProjectImage(db.Model):
    __tablename__ = 'project_images'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    goal_id = db.Column(
        db.Integer,
        db.ForeignKey('project_goals.id'),
        nullable=True)
    image_url = db.Column(db.String(500), nullable=False)
    is_primary = db.Column(db.Boolean, default=False, nullable=False)
    image_type = db.Column(
        db.Enum(ImageType),
        nullable=False,
        default=ImageType.MAIN)

    def __repr__(self):
        return f'<ProjectImage {self.id} project={self.project_id}>'


class ProjectTagRelation(db.Model):
    __tablename__ = 'project_tag_relations'

    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        primary_key=True)
    tag_id = db.Column(
        db.Integer,
        db.ForeignKey('project_tags.id'),
        primary_key=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return (
            f"<ProjectTagRelation project={self.project_id} "
            f"tag={self.tag_id}>"
        )


class ProjectUpdate(db.Model):
    __tablename__ = 'project_updates'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<ProjectUpdate {self.id} project={self.project_id}>'


class ProjectComment(db.Model):
    __tablename__ = 'project_comments'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    user = db.relationship('User')

    def __repr__(self):
        return f'<ProjectComment {self.id} project={self.project_id}>'


class Pledge(db.Model):
    __tablename__ = 'pledges'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(
        db.Enum(PledgeStatus),
        nullable=False,
        default=PledgeStatus.PENDING)
    address_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'user_addresses.id',
            ondelete='SET NULL'),
        nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    user = db.relationship('User')
    address = db.relationship('UserAddress')

    __table_args__ = (
        CheckConstraint('amount > 0', name='check_pledge_amount_positive'),
    )

    def __repr__(self):
        return f'<Pledge {self.id} amount={self.amount}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(
        db.String(32),
        unique=True,
        nullable=True,
        index=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    pledge_id = db.Column(
        db.Integer,
        db.ForeignKey('pledges.id'),
        unique=True,
        nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(
        db.Enum(OrderStatus),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True)
    # Fixed when the order is created
    is_reward = db.Column(db.Boolean, default=False, nullable=False)
    address_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'user_addresses.id',
            ondelete='SET NULL'),
        nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    project = db.relationship('Project')
    pledge = db.relationship('Pledge')
    address = db.relationship('UserAddress')
    shipment = db.relationship('Shipment', backref='order', uselist=False)
    refund_requests = db.relationship(
        'RefundRequest',
        backref='order',
        order_by='RefundRequest.id.desc()',
        lazy='dynamic')

    def __repr__(self):
        return f'<Order {self.order_number} status={self.status}>'


class RefundRequest(db.Model):
    __tablename__ = 'refund_requests'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey('orders.id'),
        nullable=False,
        index=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.Enum(RefundStatus),
        nullable=False,
        default=RefundStatus.PENDING)
    admin_comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    user = db.relationship('User')

    __table_args__ = (
        # At most one undecided request per order.
        db.Index(
            'uq_refund_requests_pending_order',
            'order_id',
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'")),
    )

    def __repr__(self):
        return f'<RefundRequest {self.id} order={self.order_id}>'


class Shipment(db.Model):
    __tablename__ = 'shipments'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey('projects.id'),
        nullable=False,
        index=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey('orders.id'),
        unique=True,
        nullable=False)
    address_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'user_addresses.id',
            ondelete='SET NULL'),
        nullable=True)
    status = db.Column(
        db.Enum(ShipmentStatus),
        nullable=False,
        default=ShipmentStatus.NOT_SHIPPED)
    tracking_number = db.Column(db.String(100), nullable=True)
    carrier = db.Column(db.String(50), nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<Shipment {self.id} order={self.order_id}>'


class Post(db.Model):
    __tablename__ = 'posts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    content = db.Column(db.Text, nullable=False, default='')
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    images = db.relationship(
        'PostImage',
        backref='post',
        order_by='PostImage.id',
        cascade='all, delete-orphan')
    comments = db.relationship(
        'Comment',
        backref='post',
        lazy='dynamic',
        cascade='all, delete-orphan')
    likes = db.relationship(
        'Like',
        backref='post',
        lazy='dynamic',
        cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Post {self.id} by {self.user_id}>'


class PostImage(db.Model):
    __tablename__ = 'post_images'

    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'posts.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    image_url = db.Column(db.String(500), nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)


class Comment(db.Model):
    __tablename__ = 'comments'

    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'posts.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False)
    # Reply target; only direct children are read back
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'comments.id',
            ondelete='CASCADE'),
        nullable=True,
        index=True)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    user = db.relationship('User')
    replies = db.relationship(
        'Comment',
        backref=db.backref('parent', remote_side=[id]),
        lazy='dynamic',
        cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Comment {self.id} post={self.post_id}>'


class Like(db.Model):
    __tablename__ = 'likes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False)
    post_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'posts.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'post_id', name='uq_user_post_like'),
    )


class Follow(db.Model):
    __tablename__ = 'follows'

    id = db.Column(db.Integer, primary_key=True)
    follower_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    followed_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    follower = db.relationship('User', foreign_keys=[follower_id])
    followed = db.relationship('User', foreign_keys=[followed_id])

    __table_args__ = (
        UniqueConstraint(
            'follower_id',
            'followed_id',
            name='uq_follower_followed'),
        CheckConstraint(
            'follower_id != followed_id',
            name='check_no_self_follow'),
    )

    def __repr__(self):
        return f'<Follow {self.follower_id} -> {self.followed_id}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='SET NULL'),
        nullable=True)
    # USER, ADMIN, SYSTEM, ANONYMOUS
    actor_role = db.Column(db.String(20), nullable=False)
    # e.g. PAYMENT_CREATE, REFUND_PROCESS, PROJECT_REVIEW
    action = db.Column(db.String(100), nullable=False)
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)

    actor = db.relationship('User', foreign_keys=[actor_id])

    def set_payload(self, data):
        self.payload_json = json.dumps(data, ensure_ascii=False, default=str)

    def get_payload(self):
        if self.payload_json:
            return json.loads(self.payload_json)
        return {}

    def __repr__(self):
        return f'<AuditLog {self.id} action={self.action}>'
