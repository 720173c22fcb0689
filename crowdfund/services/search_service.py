from crowdfund.extensions import db
from crowdfund.errors import AppError, ErrorCode
from crowdfund.models import (
    Order,
    Project,
    ProjectStatus,
    ProjectTagRelation,
)
from crowdfund.utils import parse_amount, parse_datetime
from sqlalchemy import func, or_
import re
import logging

logger = logging.getLogger(__name__)

SORT_OPTIONS = (
    'relevance',
    'newest',
    'ending_soon',
    'most_funded',
    'progress',
    'popularity',
)


def sanitize_query(query):
    if not query:
        return None
    q = str(query).replace('\x00', '').strip()
    if not q:
        return None
    q = re.sub(r'(--|/\*|\*/|;|["\'`\\#])', ' ', q)
    q = re.sub(r'\s+', ' ', q).strip()
    return q[:80] if len(q) > 80 else q


def _parse_id_list(value):
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        raw = value
    else:
        raw = str(value).split(',')
    ids = []
    for item in raw:
        item = str(item).strip()
        if not item:
            continue
        if not item.isdigit():
            raise AppError(ErrorCode.VALIDATION, f'invalid id: {item}')
        ids.append(int(item))
    return ids


def parse_filters(args):
    """Build a filter dict from query string arguments."""
    filters = {'keyword': sanitize_query(args.get('keyword'))}

    category = args.get('category') or args.get('category_id')
    if category:
        if not str(category).isdigit():
            raise AppError(ErrorCode.VALIDATION, 'invalid category')
        filters['category_id'] = int(category)

    status = args.get('status')
    if status:
        try:
            filters['status'] = ProjectStatus(status)
        except ValueError:
            raise AppError(ErrorCode.VALIDATION, f'invalid status: {status}')

    if args.get('min_amount'):
        filters['min_amount'] = parse_amount(
            args.get('min_amount'), 'min_amount')
    if args.get('max_amount'):
        filters['max_amount'] = parse_amount(
            args.get('max_amount'), 'max_amount')
    if args.get('start_date'):
        filters['start_date'] = parse_datetime(
            args.get('start_date'), 'start_date')
    if args.get('end_date'):
        filters['end_date'] = parse_datetime(args.get('end_date'), 'end_date')

    filters['tags'] = _parse_id_list(args.get('tags'))
    sort_by = args.get('sort_by') or 'relevance'
    if sort_by not in SORT_OPTIONS:
        raise AppError(ErrorCode.VALIDATION, f'invalid sort_by: {sort_by}')
    filters['sort_by'] = sort_by
    return filters


def build_query(filters):
    base_query = Project.query

    if filters.get('status') is not None:
        base_query = base_query.filter(Project.status == filters['status'])
    if filters.get('category_id'):
        base_query = base_query.filter(
            Project.category_id == filters['category_id'])
    if filters.get('min_amount') is not None:
        base_query = base_query.filter(
            Project.total_amount >= filters['min_amount'])
    if filters.get('max_amount') is not None:
        base_query = base_query.filter(
            Project.total_amount <= filters['max_amount'])
    if filters.get('start_date'):
        base_query = base_query.filter(
            Project.created_at >= filters['start_date'])
    if filters.get('end_date'):
        base_query = base_query.filter(
            Project.created_at <= filters['end_date'])

    # Every requested tag must be present.
    for tag_id in filters.get('tags') or []:
        base_query = base_query.filter(
            Project.id.in_(
                db.session.query(ProjectTagRelation.project_id).filter(
                    ProjectTagRelation.tag_id == tag_id)))

    keyword = filters.get('keyword')
    if keyword:
        keyword_lower = keyword.lower()
        base_query = base_query.filter(
            or_(
                Project.title.ilike(f'%{keyword_lower}%'),
                Project.description.ilike(f'%{keyword_lower}%')
            )
        )
    return base_query


def search_projects(filters, page=1, per_page=20):
    projects = build_query(filters).all()

    if not projects:
        return {
            'items': [],
            'page': page,
            'total': 0,
            'pages': 0,
            'per_page': per_page
        }

    keyword = filters.get('keyword')
    title_scores = calculate_title_match_score(
        projects, keyword) if keyword else {}
    popularity_scores = calculate_popularity_score(projects)

    final_scores = {}
    for project in projects:
        final_scores[project.id] = (
            3 * title_scores.get(project.id, 0) +
            1 * popularity_scores.get(project.id, 0)
        )

    sort_by = filters.get('sort_by', 'relevance')
    if sort_by == 'newest':
        sorted_projects = sorted(
            projects, key=lambda p: p.created_at, reverse=True)
    elif sort_by == 'ending_soon':
        sorted_projects = sorted(projects, key=lambda p: p.end_date)
    elif sort_by == 'most_funded':
        sorted_projects = sorted(
            projects, key=lambda p: float(p.total_amount), reverse=True)
    elif sort_by == 'progress':
        sorted_projects = sorted(
            projects, key=lambda p: p.progress or 0, reverse=True)
    elif sort_by == 'popularity':
        sorted_projects = sorted(
            projects, key=lambda p: popularity_scores.get(
                p.id, 0), reverse=True)
    else:
        sorted_projects = sorted(
            projects,
            key=lambda p: (final_scores.get(p.id, 0), p.created_at),
            reverse=True)

    total = len(sorted_projects)
    start = (page - 1) * per_page
    end = start + per_page

    return {
        'items': sorted_projects[start:end],
        'page': page,
        'total': total,
        'pages': (total + per_page - 1) // per_page,
        'per_page': per_page
    }


def calculate_title_match_score(projects, query):
    scores = {}
    query_lower = query.lower().strip()

    for project in projects:
        score = 0
        title_lower = project.title.lower()

        # Prefix match has higher weight
        if title_lower.startswith(query_lower):
            score += 10

        score += title_lower.count(query_lower) * 3

        query_words = query_lower.split()
        title_words = title_lower.split()
        score += len(set(query_words) & set(title_words)) * 2

        scores[project.id] = score

    # Normalize to 0-100
    max_score = max(scores.values()) if scores else 1
    if max_score > 0:
        scores = {
            pid: (score / max_score) * 100 for pid, score in scores.items()}

    return scores


def calculate_popularity_score(projects):
    """Backer count normalized to 0-100."""
    project_ids = [p.id for p in projects]
    backer_counts = db.session.query(
        Order.project_id,
        func.count(func.distinct(Order.user_id))
    ).filter(
        Order.project_id.in_(project_ids)
    ).group_by(Order.project_id).all()
    counts = {pid: count for pid, count in backer_counts}

    max_count = max(counts.values()) if counts else 0
    if max_count == 0:
        return {pid: 0 for pid in project_ids}
    return {
        pid: (counts.get(pid, 0) / max_count) * 100 for pid in project_ids}
