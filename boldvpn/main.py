import uuid

from fastapi import APIRouter, FastAPI, Request

from boldvpn.api.admin import router as admin_router
from boldvpn.api.devices import router as devices_router
from boldvpn.api.servers import router as servers_router
from boldvpn.errors import register_error_handlers
from boldvpn.logging import configure_logging

configure_logging()

app = FastAPI(title="BoldVPN API")
register_error_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


api_router = APIRouter()
api_router.include_router(devices_router)
api_router.include_router(servers_router)
api_router.include_router(admin_router)
app.include_router(api_router, prefix="/api")


@app.get("/health")
def health_check():
    return {"status": "ok"}
