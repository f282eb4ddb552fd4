import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load env from mymcp/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from mymcp.core.config import settings, validate_config  # noqa: E402
from mymcp.core.database import create_all_tables  # noqa: E402
from mymcp.core.errors import install_error_handlers  # noqa: E402
from mymcp.core.logging import configure_logging  # noqa: E402
from mymcp.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from mymcp.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from mymcp.core.validation import validate_env  # noqa: E402
from mymcp.api import health, servers, subscriptions  # noqa: E402
from mymcp.features.plans.service import seed_plans  # noqa: E402
from mymcp.features.servers.orchestrator import shutdown_executor  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("mymcp")
    logger.info("Starting mymcp control plane...")
    app.state.startup_time = time.time()
    create_all_tables()
    seed_plans()
    try:
        yield
    finally:
        shutdown_executor()
        logger.info("Stopping mymcp control plane...")


app = FastAPI(title="mymcp - MCP server control plane", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

install_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(servers.router)
app.include_router(subscriptions.router)
app.include_router(health.router)
