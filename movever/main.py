from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router as api_router
from .logging_setup import configure_logging
from .config import settings
from .db import init_db
from .cache import ping
from .errors import MoveverError
from .services import build_services
import logging

# file logging, configured once at import
configure_logging(settings)
logger = logging.getLogger("movever.main")

app = FastAPI(title="MoveVer - Trip Matching and Delivery API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:8081", "http://localhost:8081"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")


@app.exception_handler(MoveverError)
async def _domain_error(request: Request, exc: MoveverError):
    logger.info("request_rejected: path=%s status=%s detail=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
async def _startup():
    logger.info("Starting MoveVer API application")
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    await init_db(app.state.services.engine)


@app.on_event("shutdown")
async def _shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.close()


@app.get("/health")
async def health_check():
    body = {"status": "ok"}
    services = getattr(app.state, "services", None)
    if services is not None and services.redis is not None:
        body["redis"] = await ping(services.redis)
    return body


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
