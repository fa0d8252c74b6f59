"""FastAPI router for Courier API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from courier import __version__
from courier.exceptions import AuthorizationError, NotFoundError, ValidationError
from courier.logging import bind_context, get_logger
from courier.models import Tenant
from courier.service import CourierService
from courier.webhooks import SweepRunner

from .auth import AuthDependency, AuthenticatedCaller, security
from .helpers import (
    attempt_result_to_response,
    attempt_to_response,
    delivery_to_response,
    subscription_to_response,
    tenant_to_response,
)
from .schemas import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    SendTestRequest,
    SendTestResponse,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
    SweepResponse,
    TenantRequest,
    TenantResponse,
)

logger = get_logger(__name__)

router = APIRouter()

# Service instance and optional in-process sweep (set by app lifespan)
_service: CourierService | None = None
_sweep: SweepRunner | None = None


def set_service(service: CourierService | None, sweep: SweepRunner | None = None) -> None:
    """Set the global service instance."""
    global _service, _sweep
    _service = service
    _sweep = sweep


async def get_service() -> CourierService:
    """Dependency to get the CourierService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[CourierService, Depends(get_service)]
TenantHeader = Annotated[str | None, Header(alias="X-Tenant-ID")]


async def get_caller(
    service: ServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    x_tenant_id: TenantHeader = None,
) -> AuthenticatedCaller:
    """Dependency resolving the authenticated caller."""
    return await AuthDependency(service.settings)(credentials, x_tenant_id)


CallerDep = Annotated[AuthenticatedCaller, Depends(get_caller)]


async def get_tenant(
    service: ServiceDep,
    caller: CallerDep,
    x_tenant_id: TenantHeader = None,
) -> Tenant:
    """Dependency resolving the tenant a request acts on."""
    ref = caller.scope(x_tenant_id)
    tenant = await service.resolve_tenant(ref)
    if tenant is None:
        raise NotFoundError("tenant", ref)
    bind_context(tenant_id=tenant.id)
    return tenant


TenantDep = Annotated[Tenant, Depends(get_tenant)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    connected = _service is not None
    return HealthResponse(
        status="healthy" if connected else "unhealthy",
        version=__version__,
        storage_connected=connected,
        sweep_running=_sweep is not None and _sweep.running,
    )


@router.put("/tenants/{tenant_id}", response_model=TenantResponse, tags=["tenants"])
async def register_tenant(
    tenant_id: str,
    request: TenantRequest,
    service: ServiceDep,
    caller: CallerDep,
) -> TenantResponse:
    """Register a tenant, or update its slug and name."""
    caller.scope(tenant_id)
    tenant = await service.register_tenant(tenant_id, slug=request.slug, name=request.name)
    return tenant_to_response(tenant)


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["subscriptions"],
)
async def create_subscription(
    request: SubscriptionCreateRequest,
    service: ServiceDep,
    tenant: TenantDep,
) -> SubscriptionResponse:
    """Create a subscription.

    The response carries the full signing secret. Later reads only show
    its last four characters.
    """
    subscription = await service.registry.create(
        tenant.id,
        name=request.name,
        url=request.url,
        resources=request.resources,
        events=request.events,
        enabled=request.enabled,
        secret=request.secret,
        bearer_token=request.bearer_token,
        body_template=request.body_template,
        retry_policy=request.retry_policy,
    )
    return subscription_to_response(subscription, reveal_secret=True)


@router.get("/subscriptions", response_model=SubscriptionListResponse, tags=["subscriptions"])
async def list_subscriptions(
    service: ServiceDep,
    tenant: TenantDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=200)] = 50,
) -> SubscriptionListResponse:
    """List the tenant's subscriptions, newest first."""
    result = await service.registry.list(tenant.id, page=page, page_size=page_size)
    return SubscriptionListResponse(
        items=[subscription_to_response(s) for s in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionResponse,
    tags=["subscriptions"],
)
async def get_subscription(
    subscription_id: str,
    service: ServiceDep,
    tenant: TenantDep,
) -> SubscriptionResponse:
    subscription = await service.registry.get_by_id(tenant.id, subscription_id)
    return subscription_to_response(subscription)


@router.patch(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionResponse,
    tags=["subscriptions"],
)
async def update_subscription(
    subscription_id: str,
    request: SubscriptionUpdateRequest,
    service: ServiceDep,
    tenant: TenantDep,
) -> SubscriptionResponse:
    """Update the fields sent in the body; null clears bearer_token and body_template."""
    changes = request.model_dump(exclude_unset=True)
    subscription = await service.registry.update(tenant.id, subscription_id, **changes)
    return subscription_to_response(subscription)


@router.delete(
    "/subscriptions/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["subscriptions"],
)
async def delete_subscription(
    subscription_id: str,
    service: ServiceDep,
    tenant: TenantDep,
) -> Response:
    await service.registry.delete(tenant.id, subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/subscriptions/{subscription_id}/test",
    response_model=SendTestResponse,
    tags=["subscriptions"],
)
async def send_test_webhook(
    subscription_id: str,
    service: ServiceDep,
    tenant: TenantDep,
    request: SendTestRequest | None = None,
) -> SendTestResponse:
    """Send a sample payload to the subscription. Nothing is logged."""
    url = request.url if request is not None else None
    result = await service.send_test(tenant.id, subscription_id, url=url)
    return attempt_result_to_response(result)


@router.post("/webhooks/ingest", response_model=IngestResponse, tags=["webhooks"])
async def ingest(
    request: IngestRequest,
    service: ServiceDep,
    caller: CallerDep,
) -> IngestResponse:
    """Report a committed mutation for webhook delivery.

    Answers 200 whatever happens to the deliveries; their outcome is in
    the activity log. An unknown tenant is dropped with a note, or
    answered with 404 when strict tenant resolution is enabled.
    """
    if not request.event:
        raise ValidationError("event", "required")
    if not request.table:
        raise ValidationError("table", "required")
    if not request.operation:
        raise ValidationError("operation", "required")
    if request.record is None:
        raise ValidationError("record", "required")

    operation = request.parsed_operation()
    if operation is None:
        raise ValidationError("operation", "must be one of insert, update, delete")

    ref = request.tenant_ref or caller.tenant_id
    if not ref:
        raise ValidationError("organization_id", "required")

    tenant = await service.resolve_tenant(ref)

    if caller.tenant_id is not None:
        names = {tenant.id, tenant.slug} if tenant is not None else {ref}
        if caller.tenant_id not in names:
            raise AuthorizationError(
                f"Caller bound to tenant {caller.tenant_id} cannot ingest for {ref}"
            )

    if tenant is None:
        if service.settings.strict_tenant_resolution:
            raise NotFoundError("tenant", ref)
        logger.warning("Ingest for unknown tenant dropped", tenant=ref, table=request.table)
        return IngestResponse(note=f"Unknown tenant {ref}; event dropped")

    delivery_ids = await service.ingest(
        tenant.id,
        resource=request.table,
        operation=operation.value,
        record=request.record,
        previous_record=request.old_record,
        event=request.event,
        occurred_at=request.timestamp,
    )
    logger.info(
        "Event ingested",
        tenant_id=tenant.id,
        table=request.table,
        operation=operation.value,
        deliveries=len(delivery_ids),
    )
    return IngestResponse(delivery_ids=delivery_ids)


@router.get("/webhooks/logs", response_model=DeliveryListResponse, tags=["webhooks"])
async def list_delivery_logs(
    service: ServiceDep,
    tenant: TenantDep,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    event: str | None = None,
    subscription_id: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=200)] = 50,
) -> DeliveryListResponse:
    """The tenant's activity log, newest first."""
    result = await service.list_deliveries(
        tenant.id,
        status=status_filter,
        event=event,
        subscription_id=subscription_id,
        page=page,
        page_size=page_size,
    )
    return DeliveryListResponse(
        items=[delivery_to_response(d) for d in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.get(
    "/webhooks/logs/{delivery_id}",
    response_model=DeliveryDetailResponse,
    tags=["webhooks"],
)
async def get_delivery_log(
    delivery_id: str,
    service: ServiceDep,
    tenant: TenantDep,
) -> DeliveryDetailResponse:
    """One activity log entry with its payload and attempt history."""
    detail = await service.get_delivery(tenant.id, delivery_id)
    return DeliveryDetailResponse(
        delivery=delivery_to_response(detail.delivery, include_payload=True),
        attempts=[attempt_to_response(a) for a in detail.attempts],
    )


@router.post("/webhooks/sweep", response_model=SweepResponse, tags=["webhooks"])
async def run_sweep(service: ServiceDep, caller: CallerDep) -> SweepResponse:
    """Run the retry sweep once, for deployments driven by an external scheduler."""
    if service.settings.is_auth_enabled and not caller.is_service:
        raise AuthorizationError("Only service callers may run the sweep")
    processed = await service.run_sweep()
    return SweepResponse(processed=processed)
