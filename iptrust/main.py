from dotenv import load_dotenv
load_dotenv()  # .env must be loaded before settings are read


# iptrust/main.py
from fastapi import FastAPI
from starlette.responses import JSONResponse

from iptrust.api.routes_access import router as access_router
from iptrust.api.routes_appeals import router as appeals_router
from iptrust.api.routes_bans import router as bans_router
from iptrust.api.routes_debug_whoami import router as debug_whoami_router
from iptrust.api.routes_metrics import router as metrics_router
from iptrust.api.routes_profiles import router as profiles_router
from iptrust.core.logging_config import configure_logging
from iptrust.core.settings import get_settings
from iptrust.db.session import SessionLocal
from iptrust.metrics import get_metrics
from iptrust.observability.middleware_latency import LatencyMiddleware
from iptrust.security.middleware_visitor import VisitorMiddleware
from iptrust.services.engine import TrustEngine

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="iptrust")

# ---- Metrics: build once and pin on app.state ----
app.state.iptrust_metrics = get_metrics()

# ---- Trust engine: one instance per process ----
app.state.engine = TrustEngine.from_settings(SessionLocal, settings)


@app.get("/health")
def health():
    return JSONResponse({"status": "ok"})


app.include_router(metrics_router)
app.include_router(debug_whoami_router)
app.include_router(profiles_router)
app.include_router(access_router)
app.include_router(bans_router)
app.include_router(appeals_router)


@app.on_event("shutdown")
async def _shutdown():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.reset()


# Starlette: the last middleware added runs first (outermost).
# Latency wraps everything, visitor tracking sits inside it.
app.add_middleware(VisitorMiddleware)
app.add_middleware(LatencyMiddleware)
