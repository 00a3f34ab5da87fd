import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medflag.config import get_settings
from medflag.core.logging import setup_logging
from medflag.routers import alerts, configuration, flagging, flags, health

settings = get_settings()
logger = setup_logging(settings)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
)


@app.on_event("startup")
def on_startup():
    # tables are created when the engine dependency is first built
    logger.info("medflag_startup", environment=settings.environment)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(flags.router, prefix="/api/v1")
app.include_router(alerts.router, prefix="/api/v1")
app.include_router(configuration.router, prefix="/api/v1")
app.include_router(flagging.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("medflag.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
