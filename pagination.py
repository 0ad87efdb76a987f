from typing import Any, Callable, Dict, Optional

from fastapi import Request

DEFAULT_PAGE_SIZE = 20


def _int_param(request: Request, name: str, default: int) -> int:
    try:
        value = int(request.query_params.get(name, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def paginate(collection, query: Dict[str, Any], request: Request, sort=None,
             transform: Optional[Callable[[dict], dict]] = None) -> Dict[str, Any]:
    """Wrap a query in a {count, next, previous, results} envelope using ?page=&show=."""
    page = _int_param(request, "page", 1)
    limit = _int_param(request, "show", DEFAULT_PAGE_SIZE)
    skip = (page - 1) * limit

    total = collection.count_documents(query)
    cursor = collection.find(query)
    if sort:
        cursor = cursor.sort(sort)
    results = list(cursor.skip(skip).limit(limit))
    if transform:
        results = [transform(d) for d in results]

    url = request.url.include_query_params(show=limit)
    next_page = str(url.include_query_params(page=page + 1)) if page * limit < total else None
    prev_page = str(url.include_query_params(page=page - 1)) if page > 1 else None

    return {"count": total, "next": next_page, "previous": prev_page, "results": results}
