# college_election/database/queries.py

import math


def paginate(query, page=1, per_page=20, max_per_page=100):
    """Slice an ordered query into one page plus the counts a listing needs."""
    try:
        page = max(int(page or 1), 1)
        per_page = min(max(int(per_page or 20), 1), max_per_page)
    except (TypeError, ValueError):
        page, per_page = 1, 20
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": math.ceil(total / per_page) if total else 0,
    }
