"""
VPS Control Plane API
=====================

Main entry point for the VPS provisioning service.

Endpoints:
- POST /api/webhook/stripe - Stripe webhook (public, signature verified)
- POST /api/vps - Create and provision a VPS directly (awaits the saga)
- POST /api/vps/{vmid}/{action} - start / stop / reboot an owned VPS
- GET /api/health - Health check

The requester id for /api/vps routes is set by the upstream auth gateway
in the X-User-Id header.
"""

import logging
import re
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from vps_control_plane import __version__
from vps_control_plane.address_pool import AddressPool, PostgresAddressPool
from vps_control_plane.billing import StripeGateway
from vps_control_plane.config import ControlPlaneConfig
from vps_control_plane.control import ControlGateway
from vps_control_plane.database import check_health, close_database
from vps_control_plane.database import init_database as db_init
from vps_control_plane.exceptions import (
    ControlFailed,
    Forbidden,
    NotFound,
    PaymentGatewayError,
    ProvisioningFailed,
    Unauthorized,
)
from vps_control_plane.logging_config import configure_logging
from vps_control_plane.memory_store import InMemoryAddressPool, InMemoryRecordStore
from vps_control_plane.models import NewServiceRequest, PowerAction, ProvisioningSecrets, utcnow
from vps_control_plane.orchestrator import ProvisioningOrchestrator
from vps_control_plane.providers import OVHProvider, ProxmoxProvider
from vps_control_plane.records import PostgresRecordStore, ServiceRecordStore
from vps_control_plane.webhooks import PaymentWebhookHandler

# Load .env file if present (dev mode)
load_dotenv()

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = ControlPlaneConfig.from_env()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize FastAPI
app = FastAPI(
    title="VPS Control Plane",
    description="VPS provisioning and power control API",
    version=__version__,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state
db_pool = None
record_store: Optional[ServiceRecordStore] = None
address_pool: Optional[AddressPool] = None
compute: Optional[ProxmoxProvider] = None
network: Optional[OVHProvider] = None
orchestrator: Optional[ProvisioningOrchestrator] = None
webhook_handler: Optional[PaymentWebhookHandler] = None
control_gateway: Optional[ControlGateway] = None

ACTION_PROGRESS = {
    PowerAction.START: "starting",
    PowerAction.STOP: "stopping",
    PowerAction.REBOOT: "rebooting",
}

HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


async def init_stores():
    """Initialize the record store, falling back to memory without a database."""
    global db_pool, record_store, address_pool
    try:
        db_pool = await db_init(
            config.database.url,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
        record_store = PostgresRecordStore(db_pool)
        address_pool = PostgresAddressPool(db_pool)
        logger.info("Database pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        logger.warning("Running without database: records are kept in memory")
        db_pool = None
        record_store = InMemoryRecordStore()
        address_pool = InMemoryAddressPool()


def init_services():
    """Initialize provider clients and the services built on them."""
    global compute, network, orchestrator, webhook_handler, control_gateway

    if config.proxmox.is_configured:
        compute = ProxmoxProvider(config.proxmox)
        logger.info(f"{compute.PROVIDER_NAME} provider initialized on node {config.proxmox.node}")
    else:
        logger.warning("Proxmox not configured, provisioning and power control disabled")

    if config.ovh.is_configured:
        network = OVHProvider(config.ovh)
        logger.info(f"{network.PROVIDER_NAME} provider initialized")
    else:
        logger.warning("OVH not configured, provisioning disabled")

    if compute and network:
        orchestrator = ProvisioningOrchestrator(
            store=record_store,
            address_pool=address_pool,
            network=network,
            compute=compute,
            node=config.proxmox.node,
            bridge=config.proxmox.bridge,
            disk=config.proxmox.disk,
        )

    if compute:
        control_gateway = ControlGateway(record_store, compute)

    if config.stripe.is_configured and orchestrator:
        webhook_handler = PaymentWebhookHandler(
            store=record_store,
            gateway=StripeGateway(config.stripe),
            orchestrator=orchestrator,
            billing_period_days=config.provisioning.billing_period_days,
        )
    else:
        logger.warning("Stripe webhook handling disabled")


@app.on_event("startup")
async def startup_event():
    """Initialize all services on startup."""
    configure_logging(config.log_level, config.log_format)

    await init_stores()
    init_services()

    logger.info("VPS Control Plane API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    if db_pool:
        await close_database(db_pool)
    for client in (compute, network):
        if client:
            client.close()


def _require_user(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


# =============================================================================
# PAYMENTS
# =============================================================================

@app.post("/api/webhook/stripe")
@limiter.limit("30/minute")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Handle Stripe webhook events.

    This endpoint is PUBLIC but secured via Stripe signature verification.
    """
    if webhook_handler is None:
        raise HTTPException(status_code=503, detail="Webhook handling not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return await webhook_handler.handle(payload, sig_header, background_tasks.add_task)
    except Unauthorized as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except PaymentGatewayError:
        # Stripe retries non-2xx deliveries
        raise HTTPException(status_code=503, detail="Payment processor unavailable")


# =============================================================================
# VPS
# =============================================================================

class CreateVPSRequest(BaseModel):
    product_id: str
    hostname: str
    os_version_id: str
    ssh_key: str
    password: str
    billing_cycle: Optional[str] = None

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v):
        v = v.strip()
        if len(v) > 253 or not HOSTNAME_RE.match(v):
            raise ValueError("Invalid hostname")
        return v.lower()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


@app.post("/api/vps", status_code=201)
async def create_vps(body: CreateVPSRequest, x_user_id: Optional[str] = Header(None)):
    """Create the pending records and provision synchronously."""
    user_id = _require_user(x_user_id)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Provisioning not configured")

    try:
        product = await record_store.get_product(body.product_id)
    except NotFound as e:
        logger.error(f"Product {body.product_id} is unusable: {e.message}")
        product = None
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    if await record_store.get_os_version(body.os_version_id) is None:
        raise HTTPException(status_code=404, detail="OS version not found")

    created = await record_store.create_pending_service(NewServiceRequest(
        subscription_id=f"manual-{uuid.uuid4()}",
        user_id=user_id,
        product_id=product.id,
        hostname=body.hostname,
        os_version_id=body.os_version_id,
        total_amount=product.price,
        paid_until=utcnow() + timedelta(days=config.provisioning.billing_period_days),
        billing_cycle=body.billing_cycle,
    ))
    if created is None:
        raise HTTPException(status_code=409, detail="Order already exists")
    _, service = created

    try:
        service = await orchestrator.provision(
            service.id,
            ProvisioningSecrets(ssh_key=body.ssh_key, password=body.password),
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ProvisioningFailed as e:
        logger.error(f"Direct provisioning failed: {e}", extra={"service_id": e.service_id})
        raise HTTPException(status_code=500, detail=ProvisioningFailed.PUBLIC_MESSAGE)

    return {
        "message": "VPS provisioned successfully!",
        "service": service.to_dict(),
    }


@app.post("/api/vps/{vmid}/{action}")
@limiter.limit("10/minute")
async def control_vps(
    request: Request,
    vmid: int,
    action: str,
    x_user_id: Optional[str] = Header(None),
):
    """Start, stop or reboot a VPS owned by the requester."""
    user_id = _require_user(x_user_id)
    if control_gateway is None:
        raise HTTPException(status_code=503, detail="Power control not configured")

    try:
        power_action = PowerAction(action)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")

    try:
        service = await control_gateway.control_instance(vmid, user_id, power_action)
    except Forbidden as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ControlFailed as e:
        raise HTTPException(status_code=502, detail=e.message)

    return {
        "message": f"VM {vmid} is {ACTION_PROGRESS[power_action]}.",
        "service": service.to_dict(),
    }


# =============================================================================
# HEALTH
# =============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    health: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "stripe_configured": config.stripe.is_configured,
        "compute_provider": compute.PROVIDER_ID if compute else None,
        "network_provider": network.PROVIDER_ID if network else None,
        "database_connected": db_pool is not None,
    }

    if db_pool:
        try:
            health["database"] = await check_health(db_pool)
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health["status"] = "degraded"
            health["database"] = {"status": "error", "error": str(e)}

    return health


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
