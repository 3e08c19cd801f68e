from fastapi import APIRouter, Depends, Request

from marginalia.errors import ValidationError
from marginalia.search.service import build_query
from marginalia.server.deps import require_user
from marginalia.server.runtime import get_runtime
from marginalia.server.schemas import SearchRequest

router = APIRouter(tags=["search"])


async def _read_body(request: Request) -> SearchRequest:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be a JSON object") from None
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return SearchRequest.model_validate(payload)


@router.post("/search")
async def search_highlights(request: Request, user_id: str = Depends(require_user)):
    # Body is read after require_user so an anonymous request is always 401.
    body = await _read_body(request)
    runtime = get_runtime()
    query = build_query(body.query, body.mode, body.limit, user_id=user_id)
    response = await runtime.search.search(query)
    return response.to_dict()
