"""OracleApi: HTTP surface of the oracle service.

Routes:
    POST /oracle/verify                         run a verification cycle
    GET  /oracle/verification/{milestoneId}     saved verification records
    GET  /oracle/health/{providerId}            provider health
    POST /oracle/providers/{providerId}/reset   operator reset of a provider
    GET  /oracle/feeds/{projectId}              active feed subscriptions
    POST /oracle/subscribe                      create a feed subscription
    GET  /oracle/alerts                         feed alerts and a summary
    POST /oracle/alerts/{alertId}/acknowledge   acknowledge an alert
    GET  /health                                liveness (not rate limited)

Request bodies and query strings are validated by pydantic models; a failed
validation is answered with HTTP 400 naming the offending field.

Every oracle route is rate limited per (operation, caller). The caller is
``request.state.user_id`` when an upstream authentication layer set it, else
the client address. Responses carry ``X-RateLimit-*`` headers; rejected calls
get HTTP 429 with ``retryAfterSeconds``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .FeedMonitor import AlertNotFoundError, AlertType, Severity
from .fetchers import BaseFetcher
from .OracleOrchestrator import OracleOrchestrator
from .ProviderRegistry import ProviderNotFoundError, format_validation_error
from .RateLimiter import RateLimiter
from .Stores import FeedSubscription, FeedType, InMemorySubscriptionStore, SubscriptionStore

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]

DEFAULT_SWEEP_INTERVAL = 300.0


class BadRequestError(ValueError):
    """Request body is not a JSON object (HTTP 400)."""

    pass


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _upper(value: Any) -> Any:
    value = _blank_to_none(value)
    return value.strip().upper() if isinstance(value, str) else value


class VerifyRequest(_RequestModel):
    """Body of POST /oracle/verify."""

    milestone_id: str = Field(min_length=1)
    provider_ids: Optional[list[str]] = None


class SubscribeRequest(_RequestModel):
    """Body of POST /oracle/subscribe.

    :ivar feed_type: FeedType name, any case.
    :ivar webhook_url: Optional http(s) push destination.
    :ivar budget: Optional non-negative spending cap.
    """

    project_id: str = Field(min_length=1)
    feed_type: FeedType
    webhook_url: Optional[str] = None
    budget: Optional[float] = Field(default=None, ge=0, strict=True)
    location: Optional[str] = None
    equipment_type: Optional[str] = None

    @field_validator("feed_type", mode="before")
    @classmethod
    def _feed_type_name(cls, value: Any) -> Any:
        return _upper(value)

    @field_validator("webhook_url", "location", "equipment_type", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("webhook_url")
    @classmethod
    def _http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    def to_subscription(self) -> FeedSubscription:
        return FeedSubscription(
            project_id=self.project_id,
            feed_type=self.feed_type,
            webhook_url=self.webhook_url,
            budget=self.budget,
            location=self.location,
            equipment_type=self.equipment_type,
        )


class AlertQuery(_RequestModel):
    """Filters of GET /oracle/alerts."""

    provider_id: Optional[str] = None
    alert_type: Optional[AlertType] = Field(default=None, alias="type")
    severity: Optional[Severity] = None
    unacknowledged: bool = False

    @field_validator("provider_id", mode="before")
    @classmethod
    def _optional_provider(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("alert_type", "severity", mode="before")
    @classmethod
    def _enum_name(cls, value: Any) -> Any:
        return _upper(value)


class AcknowledgeRequest(_RequestModel):
    acknowledged_by: Optional[str] = None

    @field_validator("acknowledged_by", mode="before")
    @classmethod
    def _optional_user(cls, value: Any) -> Any:
        return _blank_to_none(value)


def error_response(message: str, status_code: int, headers: dict[str, str] | None = None, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code, headers=headers)


def caller_identity(request: Request) -> str:
    """Authenticated user id if present, else the client address."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


async def _json_body(request: Request, *, required: bool = True) -> dict[str, Any]:
    if not required and not await request.body():
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise BadRequestError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


def create_app(
    orchestrator: OracleOrchestrator,
    rate_limiter: RateLimiter | None = None,
    subscriptions: SubscriptionStore | None = None,
    *,
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    close_http_client: bool = True,
) -> Starlette:
    """Create the Starlette application.

    :param orchestrator: Verification orchestrator (owns the record store and feed monitor).
    :param rate_limiter: Limiter applied to every oracle route.
    :param subscriptions: Feed subscription store (default: in-memory).
    :param sweep_interval: Seconds between expired rate-limit window sweeps.
    :param close_http_client: Close the shared provider HTTP client on shutdown.
    """
    limiter = rate_limiter or RateLimiter()
    subscription_store = subscriptions if subscriptions is not None else InMemorySubscriptionStore()
    monitor = orchestrator.monitor

    def limited(operation: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            async def wrapper(request: Request) -> Response:
                decision = limiter.check(operation, caller_identity(request))
                if not decision.allowed:
                    return error_response(
                        decision.message,
                        429,
                        headers=decision.headers(),
                        retryAfterSeconds=decision.retry_after_seconds,
                    )
                try:
                    response = await handler(request)
                except BadRequestError as e:
                    response = error_response(str(e), 400)
                except ValidationError as e:
                    response = error_response(format_validation_error(e), 400)
                except (ProviderNotFoundError, AlertNotFoundError) as e:
                    response = error_response(str(e), 404)
                response.headers.update(decision.headers())
                return response

            return wrapper

        return decorator

    @limited("verify")
    async def verify_endpoint(request: Request) -> Response:
        body = VerifyRequest.model_validate(await _json_body(request))
        record = await orchestrator.run_verification_cycle(body.milestone_id, body.provider_ids or None)
        return JSONResponse(record.to_dict())

    @limited("feeds")
    async def verification_records_endpoint(request: Request) -> Response:
        milestone_id = request.path_params["milestoneId"]
        records = orchestrator.store.find_by_milestone(milestone_id)
        return JSONResponse({
            "milestoneId": milestone_id,
            "records": [r.to_dict() for r in records],
        })

    @limited("health")
    async def provider_health_endpoint(request: Request) -> Response:
        return JSONResponse(orchestrator.provider_health(request.path_params["providerId"]))

    @limited("verify")
    async def provider_reset_endpoint(request: Request) -> Response:
        provider_id = request.path_params["providerId"]
        health = orchestrator.reset_provider(provider_id)
        logger.info(f"[{provider_id}] Reset by {caller_identity(request)}")
        return JSONResponse(health)

    @limited("feeds")
    async def feeds_endpoint(request: Request) -> Response:
        project_id = request.path_params["projectId"]
        feeds = subscription_store.find(
            project_id,
            location=request.query_params.get("location") or None,
            equipment_type=request.query_params.get("equipmentType") or None,
        )
        return JSONResponse({"projectId": project_id, "feeds": [f.to_dict() for f in feeds]})

    @limited("subscribe")
    async def subscribe_endpoint(request: Request) -> Response:
        body = SubscribeRequest.model_validate(await _json_body(request))
        subscription = subscription_store.add(body.to_subscription())
        logger.info(
            f"Feed subscription {subscription.id} created for project {subscription.project_id} "
            f"({subscription.feed_type.value})"
        )
        return JSONResponse(subscription.to_dict(), status_code=201)

    @limited("health")
    async def alerts_endpoint(request: Request) -> Response:
        query = AlertQuery.model_validate(dict(request.query_params))
        alerts = monitor.alerts(
            query.provider_id,
            query.alert_type,
            query.severity,
            unacknowledged_only=query.unacknowledged,
        )
        return JSONResponse({"alerts": [a.to_dict() for a in alerts], "summary": monitor.summary()})

    @limited("verify")
    async def acknowledge_alert_endpoint(request: Request) -> Response:
        body = AcknowledgeRequest.model_validate(await _json_body(request, required=False))
        user = body.acknowledged_by or caller_identity(request)
        alert = monitor.acknowledge(request.path_params["alertId"], user)
        logger.info(f"Alert {alert.id} acknowledged by {user}")
        return JSONResponse(alert.to_dict())

    async def liveness_endpoint(request: Request) -> Response:
        return JSONResponse({"status": "ok", "providers": len(orchestrator.registry)})

    async def sweep_loop() -> None:
        while True:
            await asyncio.sleep(sweep_interval)
            limiter.sweep()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(f"Oracle API starting with {len(orchestrator.registry)} providers")
        sweeper = asyncio.create_task(sweep_loop())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            if close_http_client:
                await BaseFetcher.close_shared_client()
            logger.info("Oracle API shut down")

    routes = [
        Route("/health", liveness_endpoint, methods=["GET"]),
        Route("/oracle/verify", verify_endpoint, methods=["POST"]),
        Route("/oracle/verification/{milestoneId}", verification_records_endpoint, methods=["GET"]),
        Route("/oracle/health/{providerId}", provider_health_endpoint, methods=["GET"]),
        Route("/oracle/providers/{providerId}/reset", provider_reset_endpoint, methods=["POST"]),
        Route("/oracle/feeds/{projectId}", feeds_endpoint, methods=["GET"]),
        Route("/oracle/subscribe", subscribe_endpoint, methods=["POST"]),
        Route("/oracle/alerts", alerts_endpoint, methods=["GET"]),
        Route("/oracle/alerts/{alertId}/acknowledge", acknowledge_alert_endpoint, methods=["POST"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = limiter
    app.state.subscriptions = subscription_store
    return app
