"""HTTP routes for the balance pages, the groups bot and the operator panel."""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from ledger.errors import InsufficientFunds, StoreError
from wallet.config import settings
from wallet.engine import TransactionEngine
from wallet.errors import (
    AlreadyUnlocked,
    IntentNotFound,
    MemberNotFound,
    PasscodeRejected,
    PasscodeThrottled,
    Unauthorized,
    ValidationError,
)
from wallet.metrics import metrics_handler
from wallet.passcodes import Outcome

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", TransactionEngine)
ADMIN_PASSWORD_KEY = web.AppKey("admin_password", str)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-Admin-Password",
}

_PASSCODE_MESSAGES = {
    Outcome.NOT_FOUND: "No active passcode. Request a new code.",
    Outcome.WRONG_CODE: "Invalid passcode",
    Outcome.EXPIRED: "Passcode expired. Request a new code.",
    Outcome.LOCKED_OUT: "Too many failed attempts. Request a new code.",
}


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=_CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(_CORS_HEADERS)
        raise
    response.headers.update(_CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InsufficientFunds as exc:
        return _error(
            400,
            f"Insufficient balance. You need ₦{exc.required:,} but have ₦{exc.available:,}.",
            shortfall=exc.shortfall,
            required=exc.required,
            available=exc.available,
        )
    except PasscodeRejected as exc:
        return _error(400, _PASSCODE_MESSAGES.get(exc.outcome, "Invalid passcode"), reason=exc.outcome.value)
    except PasscodeThrottled as exc:
        response = _error(429, "Passcode requested too often. Please wait.", retryAfter=round(exc.retry_after))
        response.headers["Retry-After"] = str(max(1, round(exc.retry_after)))
        return response
    except Unauthorized:
        return _error(401, "Unauthorized")
    except AlreadyUnlocked:
        return _error(409, "Promo already unlocked")
    except (MemberNotFound, IntentNotFound) as exc:
        return _error(404, str(exc))
    except ValidationError as exc:
        return _error(400, str(exc))
    except StoreError:
        logger.exception("store failure on %s %s", request.method, request.path)
        return _error(500, "Server error, please try again later")


async def _payload(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid request") from exc
    if not isinstance(data, dict):
        raise ValidationError("Invalid request")
    return data


def _engine(request: web.Request) -> TransactionEngine:
    return request.app[ENGINE_KEY]


def _check_secret(request: web.Request, supplied: Any) -> None:
    expected = request.app[ADMIN_PASSWORD_KEY]
    if not expected or not isinstance(supplied, str):
        raise Unauthorized()
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise Unauthorized()


def _require_admin(request: web.Request) -> None:
    _check_secret(request, request.headers.get("X-Admin-Password"))


async def handle_ping(_: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def handle_get_balance(request: web.Request) -> web.Response:
    data = await _payload(request)
    view = await _engine(request).get_balance(data.get("telegramId"))
    return web.json_response({"ngn": view.balance_minor, "usd": view.converted, "usdRate": view.rate})


async def handle_generate_passcode(request: web.Request) -> web.Response:
    data = await _payload(request)
    record = await _engine(request).issue_passcode(data.get("telegramId"), data.get("purpose") or "withdraw")
    return web.json_response(
        {
            "success": True,
            "message": "Passcode sent to your Telegram",
            "purpose": record.purpose.value,
            "expiresAt": int(record.expires_at * 1000),
        }
    )


async def handle_withdraw(request: web.Request) -> web.Response:
    data = await _payload(request)
    result = await _engine(request).withdraw(
        data.get("telegramId"),
        data.get("amount"),
        data.get("passcode"),
        method=data.get("method"),
        details=data.get("details"),
    )
    return web.json_response({"newBalance": result.balance_minor})


async def handle_premium_purchase(request: web.Request) -> web.Response:
    data = await _payload(request)
    _check_secret(request, data.get("secretKey"))
    result = await _engine(request).premium_purchase(
        data.get("telegramId"),
        data.get("passcode"),
        data.get("groupOwnerId"),
        buyer_name=data.get("buyerName"),
        buyer_username=data.get("buyerUsername"),
        owner_name=data.get("groupOwnerName"),
        group_name=data.get("groupName"),
    )
    return web.json_response(
        {
            "success": True,
            "message": "🎉 Premium activated!",
            "newBuyerBalance": result.buyer_balance,
            "buyerUsd": result.buyer_converted,
            "newOwnerBalance": result.owner_balance,
            "ownerUsd": result.owner_converted,
            "premiumCostNgn": result.cost,
            "premiumCostUsd": result.cost_converted,
            "ownerEarnedNgn": result.owner_earned,
            "ownerEarnedUsd": result.owner_earned_converted,
        }
    )


async def _submit_proof(request: web.Request, data: dict[str, Any]) -> web.Response:
    await _engine(request).submit_promo_proof(
        data.get("telegramId"),
        data.get("image"),
        kind=data.get("type"),
        name=data.get("name"),
        username=data.get("username"),
        method=data.get("method"),
        whatsapp=data.get("whatsapp"),
        call=data.get("call"),
    )
    return web.json_response({"success": True, "message": "Submission sent to admin"})


async def handle_unlock_promo(request: web.Request) -> web.Response:
    data = await _payload(request)
    if data.get("image") and not data.get("passcode"):
        return await _submit_proof(request, data)
    result = await _engine(request).promo_unlock(data.get("telegramId"), data.get("passcode"))
    return web.json_response(
        {
            "success": True,
            "message": "Promo unlocked",
            "newBalance": result.balance_minor,
            "token": result.token,
            "status": result.status.value,
        }
    )


async def handle_submit_promo(request: web.Request) -> web.Response:
    return await _submit_proof(request, await _payload(request))


async def handle_admin_get_balance(request: web.Request) -> web.Response:
    _require_admin(request)
    data = await _payload(request)
    view = await _engine(request).admin_get_balance(data.get("telegramId"))
    return web.json_response({"ngn": view.balance_minor, "usd": view.converted, "usdRate": view.rate})


async def handle_admin_update_balance(request: web.Request) -> web.Response:
    _require_admin(request)
    data = await _payload(request)
    if data.get("amount") is None or not data.get("type"):
        raise ValidationError("Invalid request")
    result = await _engine(request).admin_adjustment(data.get("telegramId"), data.get("amount"), data["type"])
    return web.json_response(
        {
            "newBalance": result.balance_minor,
            "previousBalance": result.previous_balance,
            "usd": result.converted,
            "usdRate": result.rate,
        }
    )


async def handle_list_members(request: web.Request) -> web.Response:
    _require_admin(request)
    return web.json_response({"members": await _engine(request).list_members()})


async def handle_add_member(request: web.Request) -> web.Response:
    _require_admin(request)
    data = await _payload(request)
    engine = _engine(request)
    added = await engine.add_member(data.get("telegramId"))
    return web.json_response({"added": added, "members": await engine.list_members()})


async def handle_remove_member(request: web.Request) -> web.Response:
    _require_admin(request)
    data = await _payload(request)
    subject = data.get("telegramId") or request.query.get("telegramId")
    remaining = await _engine(request).remove_member(subject)
    return web.json_response({"removed": True, "members": remaining})


async def handle_reconcile(request: web.Request) -> web.Response:
    _require_admin(request)
    report = await _engine(request).reconcile()
    return web.json_response(report.as_dict())


async def handle_list_intents(request: web.Request) -> web.Response:
    _require_admin(request)
    intents = await _engine(request).list_intents(request.query.get("status"))
    return web.json_response({"intents": [intent.to_dict() for intent in intents]})


async def handle_resolve_intent(request: web.Request) -> web.Response:
    _require_admin(request)
    data = await _payload(request)
    intent = await _engine(request).resolve_intent(data.get("intentId"), data.get("status"))
    return web.json_response({"intent": intent.to_dict()})


def create_app(engine: TransactionEngine, *, admin_password: str | None = None) -> web.Application:
    app = web.Application(
        middlewares=[cors_middleware, error_middleware],
        client_max_size=25 * 1024 * 1024,
    )
    app[ENGINE_KEY] = engine
    app[ADMIN_PASSWORD_KEY] = settings.ADMIN_PASSWORD if admin_password is None else admin_password

    app.router.add_get("/ping", handle_ping)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_post("/get-balance", handle_get_balance)
    app.router.add_post("/generate-passcode", handle_generate_passcode)
    app.router.add_post("/withdraw", handle_withdraw)
    app.router.add_post("/api/premium-purchase", handle_premium_purchase)
    app.router.add_post("/unlock-promo", handle_unlock_promo)
    app.router.add_post("/submit-promo", handle_submit_promo)
    app.router.add_post("/admin/get-balance", handle_admin_get_balance)
    app.router.add_post("/admin/update-balance", handle_admin_update_balance)
    app.router.add_get("/admin/promo-members", handle_list_members)
    app.router.add_post("/admin/promo-members", handle_add_member)
    app.router.add_delete("/admin/promo-members", handle_remove_member)
    app.router.add_post("/admin/reconcile", handle_reconcile)
    app.router.add_get("/admin/promo-intents", handle_list_intents)
    app.router.add_post("/admin/promo-intents/resolve", handle_resolve_intent)
    return app


__all__ = ["ENGINE_KEY", "create_app"]
