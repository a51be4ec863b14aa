import inspect
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from config_service import Settings
from http_errors import BadRequest, HttpError, InternalServerError, Success, unclassified_envelope
from route_service import ParamSpec, RouteDescriptor, RouteTable

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool]

_DECIMAL = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
_HEX = re.compile(r"0[xX][0-9a-fA-F]+")


def coerce_param(raw: str, declared_type: str) -> Scalar:
    """Cast a raw path value to its declared type.

    Coercion never rejects: a non numeric value for a `number` parameter becomes
    NaN and any non-empty value for a `boolean` parameter is True (so "false"
    is True). Handlers validate what they need.

    Numbers are plain decimals with an optional exponent, or `0x` hex. Python
    literal forms such as `1_000`, `inf` or `nan` are not numbers here.
    """
    if declared_type == "number":
        text = raw.strip()
        if _HEX.fullmatch(text):
            return int(text, 16)
        match = _DECIMAL.fullmatch(text)
        if match is None:
            return math.nan
        if "." in text or match.group(2):
            return float(text)
        return int(text)
    if declared_type == "boolean":
        return bool(raw)
    return str(raw)


@dataclass(frozen=True)
class BoundParam:
    spec: ParamSpec
    value: Scalar

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def declared_type(self) -> str:
        return self.spec.declared_type


def bind_params(route: RouteDescriptor, raw: Dict[str, str]) -> Dict[str, BoundParam]:
    bound = {}
    for spec in route.params:
        value = raw.get(spec.name, "")
        bound[spec.name] = BoundParam(spec=spec, value=coerce_param(value, spec.declared_type))
    return bound


class RouteLogger(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['method']} {self.extra['route']}] {msg}", kwargs


@dataclass
class HandlerInvocation:
    request: Request
    body: Any
    params: Dict[str, BoundParam]
    config: Settings
    logger: logging.LoggerAdapter
    route: Optional[RouteDescriptor] = field(default=None, repr=False)

    def param(self, name: str) -> Scalar:
        return self.params[name].value

    @property
    def query(self):
        return self.request.query_params


async def parse_body(request: Request) -> Any:
    raw = await request.body()
    if not raw or not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as e:
        raise BadRequest("Invalid JSON body", {"reason": str(e)})


async def _invoke(route: RouteDescriptor, ctx: HandlerInvocation) -> Any:
    if inspect.iscoroutinefunction(route.handler):
        return await route.handler(ctx)
    result = await run_in_threadpool(route.handler, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


def _json(content: Dict[str, Any], status: int) -> Response:
    return JSONResponse(jsonable_encoder(content), status_code=status)


def render_outcome(outcome: Any, settings: Settings) -> Response:
    """Map a handler's outcome onto the success or error envelope."""
    if isinstance(outcome, Success):
        if outcome.status == 204:
            return Response(status_code=204)
        return _json(outcome.to_envelope(), outcome.status)
    if isinstance(outcome, HttpError):
        return _json(outcome.to_envelope(), outcome.status)
    details = None if settings.is_production else {"returned": type(outcome).__name__}
    err = InternalServerError("Handler did not produce a response", details)
    return _json(err.to_envelope(), err.status)


async def dispatch(route: RouteDescriptor, request: Request, settings: Settings) -> Response:
    log = RouteLogger(logging.getLogger("routes"), {"method": route.method, "route": route.url})
    try:
        body = await parse_body(request) if route.method not in ("GET", "HEAD") else {}
        ctx = HandlerInvocation(
            request=request,
            body=body,
            params=bind_params(route, request.path_params),
            config=settings,
            logger=log,
            route=route,
        )
        outcome = await _invoke(route, ctx)
    except HttpError as e:
        outcome = e
    except Exception as e:
        log.exception("unhandled error: %s", e)
        return _json(unclassified_envelope(e, not settings.is_production), 500)

    if isinstance(outcome, HttpError) and outcome.status >= 500:
        log.error("%s: %s", outcome.kind, outcome.message)
    try:
        return render_outcome(outcome, settings)
    except (TypeError, ValueError) as e:
        log.exception("could not serialize response: %s", e)
        return _json(unclassified_envelope(e, not settings.is_production), 500)


def _endpoint(route: RouteDescriptor, settings: Settings):
    async def endpoint(request: Request) -> Response:
        return await dispatch(route, request, settings)

    endpoint.__name__ = f"{route.method.lower()}_{route.source.replace('/', '_') or 'root'}"
    return endpoint


def register_routes(app: FastAPI, table: RouteTable, settings: Settings) -> None:
    for route in table.by_priority():
        app.add_api_route(
            route.transport_path,
            _endpoint(route, settings),
            methods=[route.method],
            include_in_schema=False,
        )
    for route in table:
        logger.info("Registered route at path: %s %s", route.method, route.url)
