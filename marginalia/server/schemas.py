from typing import Any

from pydantic import BaseModel

from marginalia.constants import DEFAULT_SEARCH_LIMIT


# --- Search ---


class SearchRequest(BaseModel):
    # Checked by build_query; bad values map to 400, not 422.
    query: Any = None
    mode: Any = None
    limit: Any = DEFAULT_SEARCH_LIMIT
