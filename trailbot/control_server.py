"""aiohttp control surface for the trailing-stop bot.

Endpoints:
    POST   /alert, /alerta, /positions/open   open a position (webhook)
    POST   /positions/close                   sell a share of holdings
    GET    /                                  banner with endpoint list
    GET    /status                            active count and uptime
    GET    /health                            store and monitor checks
    GET    /positions/active, /positions/history, /positions (/trades/all)
    GET    /summary                           aggregate profit
    DELETE /positions/{position_id}           administrative delete

Bodies are JSON. Alert senders such as TradingView post JSON with a
``text/plain`` content type, so the body is parsed regardless of header.
Errors are returned as ``{"error": message}``.
"""

import json
import time
from typing import Optional, Union

import pydantic
from aiohttp import web
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .engine import PositionLifecycleEngine
from .exceptions import (
    ExternalDependencyError,
    NoActivePosition,
    OrderRejected,
    PersistenceError,
    ValidationError,
)
from .logging_setup import logger
from .scheduler import MonitorScheduler

Number = Union[int, float, str]


class OpenPositionRequest(BaseModel):
    """Open request; the original webhook field names are accepted too."""
    model_config = ConfigDict(extra="ignore")

    instrument: str = Field(..., validation_alias=AliasChoices("instrument", "par", "pair"))
    stop_percent: Number = Field(
        ..., validation_alias=AliasChoices("stop_percent", "trailingStopPercent")
    )
    notional: Optional[Number] = Field(None, validation_alias=AliasChoices("notional", "cantidadUSD"))
    quantity: Optional[Number] = None


class ClosePositionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instrument: str = Field(..., validation_alias=AliasChoices("instrument", "par", "pair"))
    percent: Number = Field(100, validation_alias=AliasChoices("percent", "percentOfHoldings"))


def _pydantic_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map the bot's error taxonomy onto HTTP status codes."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except pydantic.ValidationError as e:
        return web.json_response({"error": _pydantic_message(e)}, status=400)
    except NoActivePosition as e:
        return web.json_response({"error": str(e)}, status=404)
    except ValidationError as e:
        return web.json_response({"error": str(e)}, status=400)
    except (ExternalDependencyError, OrderRejected) as e:
        logger.warning(f"{request.method} {request.path} failed upstream: {e}")
        return web.json_response({"error": str(e)}, status=502)
    except PersistenceError as e:
        return web.json_response({"error": str(e), "order_ref": e.order_ref}, status=500)
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return web.json_response({"error": f"internal error: {e}"}, status=500)


class ControlServer:
    """HTTP front end over a ``PositionLifecycleEngine``.

    When a scheduler is given it is started after ``engine.recover()`` on
    application startup and stopped on cleanup.
    """

    def __init__(
        self,
        engine: PositionLifecycleEngine,
        scheduler: Optional[MonitorScheduler] = None,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.app = web.Application(middlewares=[error_middleware])
        self._setup_routes()
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)

    def _setup_routes(self):
        self.app.router.add_get("/", self.handle_index)
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/status", self.handle_status)
        self.app.router.add_post("/alert", self.handle_open)
        self.app.router.add_post("/alerta", self.handle_open)
        self.app.router.add_post("/positions/open", self.handle_open)
        self.app.router.add_post("/positions/close", self.handle_close)
        self.app.router.add_get("/positions", self.handle_all)
        self.app.router.add_get("/trades/all", self.handle_all)
        self.app.router.add_get("/positions/active", self.handle_active)
        self.app.router.add_get("/positions/history", self.handle_history)
        self.app.router.add_get("/summary", self.handle_summary)
        self.app.router.add_delete("/positions/{position_id}", self.handle_delete)

    @staticmethod
    async def _read_json(request: web.Request) -> dict:
        raw = await request.text()
        try:
            data = json.loads(raw) if raw.strip() else None
        except json.JSONDecodeError as e:
            raise ValidationError(f"invalid JSON body: {e.msg}")
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        return data

    async def handle_index(self, request: web.Request):
        return web.json_response({
            "status": "running",
            "endpoints": {
                "alert": "POST /alert",
                "open": "POST /positions/open",
                "close": "POST /positions/close",
                "status": "GET /status",
                "positions": "GET /positions, /positions/active, /positions/history",
                "summary": "GET /summary",
            },
        })

    async def handle_health(self, request: web.Request):
        """Liveness plus store connectivity; 503 when the store is unreachable."""
        checks = {"status": "healthy", "timestamp": int(time.time()), "checks": {}}
        try:
            status = await self.engine.status()
            checks["checks"]["database"] = {"status": "up", "active_positions": status["active_count"]}
        except Exception as e:
            checks["checks"]["database"] = {"status": "down", "error": str(e)}
            checks["status"] = "unhealthy"

        if self.scheduler is not None:
            checks["checks"]["monitor"] = {
                "status": "running" if self.scheduler.running else "stopped",
                "ticks": self.scheduler.tick_count,
            }
        http_status = 200 if checks["status"] == "healthy" else 503
        return web.json_response(checks, status=http_status)

    async def handle_status(self, request: web.Request):
        return web.json_response(await self.engine.status())

    async def handle_open(self, request: web.Request):
        body = OpenPositionRequest.model_validate(await self._read_json(request))
        logger.info(f"Open request | {body.instrument} stop={body.stop_percent}%")
        result = await self.engine.open_position(
            body.instrument,
            body.stop_percent,
            notional=body.notional,
            quantity=body.quantity,
        )
        return web.json_response(result.to_dict())

    async def handle_close(self, request: web.Request):
        body = ClosePositionRequest.model_validate(await self._read_json(request))
        logger.info(f"Close request | {body.instrument} percent={body.percent}")
        result = await self.engine.close_position(body.instrument, body.percent)
        return web.json_response(result.to_dict())

    async def handle_all(self, request: web.Request):
        positions = await self.engine.list_all()
        return web.json_response([p.to_dict() for p in positions])

    async def handle_active(self, request: web.Request):
        positions = await self.engine.list_active()
        return web.json_response([p.to_dict() for p in positions])

    async def handle_history(self, request: web.Request):
        positions = await self.engine.get_history()
        return web.json_response([p.to_dict() for p in positions])

    async def handle_summary(self, request: web.Request):
        summary = await self.engine.get_summary()
        return web.json_response(summary.to_dict())

    async def handle_delete(self, request: web.Request):
        position_id = request.match_info["position_id"]
        if not await self.engine.delete_position(position_id):
            return web.json_response({"error": f"position {position_id} not found"}, status=404)
        return web.json_response({"deleted": position_id})

    async def _on_startup(self, app):
        await self.engine.recover()
        if self.scheduler is not None:
            await self.scheduler.start()

    async def _on_cleanup(self, app):
        if self.scheduler is not None:
            await self.scheduler.stop()
