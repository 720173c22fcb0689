"""Response shapes for every entity the API returns."""
from crowdfund.models import ImageType, ShipmentStatus


def iso(value):
    return value.isoformat() if value else None


def money(value):
    return float(value) if value is not None else 0.0


def user_brief(user):
    if user is None:
        return None
    return {
        'id': user.id,
        'username': user.username,
        'avatar_url': user.avatar_url,
    }


def user_to_dict(user):
    return {
        'id': user.id,
        'username': user.username,
        'email': user.email,
        'avatar_url': user.avatar_url,
        'bio': user.bio,
        'role': user.role.value,
        'is_verified': user.is_verified,
        'created_at': iso(user.created_at),
    }


def user_admin_dict(user):
    data = user_to_dict(user)
    data['deleted'] = user.deleted_at is not None
    data['deleted_at'] = iso(user.deleted_at)
    data['last_login_at'] = iso(user.last_login_at)
    return data


def address_to_dict(address):
    if address is None:
        return None
    return {
        'id': address.id,
        'user_id': address.user_id,
        'receiver_name': address.receiver_name,
        'phone': address.phone,
        'province': address.province,
        'city': address.city,
        'district': address.district,
        'detail_address': address.detail_address,
        'full_address': address.full_address,
        'is_default': address.is_default,
        'created_at': iso(address.created_at),
    }


def image_to_dict(image):
    return {
        'id': image.id,
        'project_id': image.project_id,
        'goal_id': image.goal_id,
        'image_url': image.image_url,
        'is_primary': image.is_primary,
        'image_type': image.image_type.value,
    }


def primary_image_url(images):
    """Primary image if flagged, else the first main image, else any."""
    if not images:
        return None
    for image in images:
        if image.is_primary:
            return image.image_url
    for image in images:
        if image.image_type == ImageType.MAIN:
            return image.image_url
    return images[0].image_url


def goal_to_dict(goal, total_amount):
    amount = money(goal.amount)
    raised = money(total_amount)
    return {
        'id': goal.id,
        'project_id': goal.project_id,
        'amount': amount,
        'description': goal.description,
        'is_reached': raised >= amount,
        'progress': round(min(raised / amount * 100, 100), 2)
        if amount > 0 else 0,
        'images': [image_to_dict(i) for i in goal.images],
    }


def category_to_dict(category):
    return {
        'id': category.id,
        'name': category.name,
        'created_at': iso(category.created_at),
    }


tag_to_dict = category_to_dict


def project_summary(project):
    images = project.images.all()
    return {
        'id': project.id,
        'title': project.title,
        'description': project.description,
        'creator_id': project.creator_id,
        'status': project.status.value,
        'total_amount': money(project.total_amount),
        'total_goal_amount': money(project.total_goal_amount),
        'progress': round(project.progress or 0, 2),
        'min_reward_amount': money(project.min_reward_amount),
        'end_date': iso(project.end_date),
        'category_id': project.category_id,
        'primary_image': primary_image_url(images),
        'created_at': iso(project.created_at),
        'updated_at': iso(project.updated_at),
    }


def project_detail(project):
    data = project_summary(project)
    images = project.images.all()
    data['images'] = [
        image_to_dict(i) for i in images if i.image_type == ImageType.MAIN]
    data['long_images'] = [
        i.image_url for i in images if i.image_type == ImageType.LONG]
    data['goals'] = [
        goal_to_dict(g, project.total_amount) for g in project.goals]
    data['tags'] = [tag_to_dict(t) for t in project.tags]
    data['category'] = (
        category_to_dict(project.category) if project.category else None)
    data['creator'] = user_brief(project.creator)
    data['review_comment'] = project.review_comment
    return data


def project_update_to_dict(update):
    return {
        'id': update.id,
        'project_id': update.project_id,
        'title': update.title,
        'content': update.content,
        'created_at': iso(update.created_at),
    }


def project_comment_to_dict(comment):
    return {
        'id': comment.id,
        'project_id': comment.project_id,
        'user_id': comment.user_id,
        'user': user_brief(comment.user),
        'content': comment.content,
        'created_at': iso(comment.created_at),
    }


def pledge_to_dict(pledge):
    return {
        'id': pledge.id,
        'user_id': pledge.user_id,
        'project_id': pledge.project_id,
        'amount': money(pledge.amount),
        'status': pledge.status.value,
        'address_id': pledge.address_id,
        'created_at': iso(pledge.created_at),
    }


def pledger_to_dict(pledge):
    data = pledge_to_dict(pledge)
    data['user'] = user_brief(pledge.user)
    data['address'] = address_to_dict(pledge.address)
    return data


def shipment_to_dict(shipment):
    if shipment is None:
        return None
    return {
        'id': shipment.id,
        'order_id': shipment.order_id,
        'project_id': shipment.project_id,
        'user_id': shipment.user_id,
        'address_id': shipment.address_id,
        'status': shipment.status.value,
        'tracking_number': shipment.tracking_number,
        'carrier': shipment.carrier,
        'shipped_at': iso(shipment.shipped_at),
        'delivered_at': iso(shipment.delivered_at),
        'estimated_delivery': iso(shipment.estimated_delivery),
    }


def refund_request_to_dict(refund):
    return {
        'id': refund.id,
        'order_id': refund.order_id,
        'user_id': refund.user_id,
        'reason': refund.reason,
        'status': refund.status.value,
        'admin_comment': refund.admin_comment,
        'created_at': iso(refund.created_at),
        'updated_at': iso(refund.updated_at),
    }


def order_to_dict(order):
    """Order with the project and fulfilment context a buyer sees."""
    project = order.project
    latest_refund = order.refund_requests.first()
    shipment = order.shipment
    return {
        'id': order.id,
        'order_number': order.order_number,
        'user_id': order.user_id,
        'project_id': order.project_id,
        'pledge_id': order.pledge_id,
        'amount': money(order.amount),
        'status': order.status.value,
        'is_reward': order.is_reward,
        'project_title': project.title if project else None,
        'project_status': project.status.value if project else None,
        'project_image': (
            primary_image_url(project.images.all()) if project else None),
        'shipping_status': (
            shipment.status.value if shipment
            else ShipmentStatus.NOT_SHIPPED.value),
        'tracking_number': shipment.tracking_number if shipment else None,
        'refund_status': (
            latest_refund.status.value if latest_refund
            else 'not_requested'),
        'address': address_to_dict(order.address),
        'paid_at': iso(order.paid_at),
        'created_at': iso(order.created_at),
        'updated_at': iso(order.updated_at),
    }


def post_to_dict(post, like_count=0, comment_count=0,
                 is_liked=False, is_following=False):
    return {
        'id': post.id,
        'user_id': post.user_id,
        'author': user_brief(post.author),
        'content': post.content,
        'images': [i.image_url for i in post.images],
        'like_count': like_count,
        'comment_count': comment_count,
        'is_liked': is_liked,
        'is_following': is_following,
        'created_at': iso(post.created_at),
        'updated_at': iso(post.updated_at),
    }


def comment_to_dict(comment, reply_count=None):
    data = {
        'id': comment.id,
        'post_id': comment.post_id,
        'user_id': comment.user_id,
        'user': user_brief(comment.user),
        'parent_id': comment.parent_id,
        'content': comment.content,
        'created_at': iso(comment.created_at),
    }
    if reply_count is not None:
        data['reply_count'] = reply_count
    return data


def follow_user_dict(user, followers_count, following_count):
    data = user_brief(user)
    data['bio'] = user.bio
    data['followers_count'] = followers_count
    data['following_count'] = following_count
    return data


def audit_to_dict(audit):
    return {
        'id': audit.id,
        'actor_id': audit.actor_id,
        'actor_role': audit.actor_role,
        'action': audit.action,
        'target_type': audit.target_type,
        'target_id': audit.target_id,
        'payload': audit.get_payload(),
        'created_at': iso(audit.created_at),
    }
