import logging

from allegro.auth import is_admin
from allegro.catalog import dao_for
from allegro.models import CatalogKind, Response, SearchRequest

logger = logging.getLogger(__name__)


def to_pattern(query: str) -> str:
    """Convert a search query into a LIKE pattern allowing text between the terms.

    ``"stra ins"`` becomes ``"%stra%ins%"``, which matches "Strauss Insert"."""
    return '%{}%'.format('%'.join(query.split()))


def search(conn, kind: CatalogKind, req: SearchRequest) -> Response:
    """Search one catalog kind by name and return the matching views.

    Only admins may search; anyone else gets an unsuccessful, empty result."""
    if not is_admin(conn, req.token):
        return Response(success=False, message=[])
    pattern = to_pattern(req.query)
    results = dao_for(conn, kind).find(pattern)
    logger.debug('Search %s %r matched %d rows', kind.value, pattern, len(results))
    return Response(success=True, message=results)
