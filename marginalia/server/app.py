from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marginalia import __version__
from marginalia.errors import AuthenticationError, SearchError, ValidationError
from marginalia.logging import configure_logging, get_logger
from marginalia.server.routers.search import router as search_router
from marginalia.server.runtime import get_runtime_async, reset_runtime

_logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    runtime = await get_runtime_async()
    configure_logging(runtime.config.log_level)
    yield
    await reset_runtime()


app = FastAPI(
    title="marginalia",
    description="Highlight search API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search_router)


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(AuthenticationError)
async def _authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Authentication required"})


@app.exception_handler(SearchError)
async def _search_error(request: Request, exc: SearchError) -> JSONResponse:
    content = {"error": str(exc)}
    if exc.__cause__ is not None:
        content["message"] = str(exc.__cause__)
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unhandled error in %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok"}
