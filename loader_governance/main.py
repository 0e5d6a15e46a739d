import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loader_governance.config import get_settings
from loader_governance.routers import api_router

settings = get_settings()
log_level = getattr(logging, settings.log_level, logging.INFO)
logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
logging.getLogger("loader_governance").setLevel(log_level)

app = FastAPI(title=settings.app_name)

logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}
