import asyncio
from typing import Any

from aiohttp.test_utils import TestClient, TestServer

from conftest import ADMIN_ID, PASSCODE, seed_balances, stored_balances
from wallet.passcodes import PasscodeAuthority
from wallet.web import create_app

ADMIN_HEADERS = {"X-Admin-Password": "pw"}


def _run(engine, requests: list[tuple[str, str, dict[str, Any]]]) -> list[tuple[int, Any, dict[str, str]]]:
    """Send ``requests`` in order against a fresh app and collect the answers."""

    async def runner() -> list[tuple[int, Any, dict[str, str]]]:
        answers = []
        app = create_app(engine, admin_password="pw")
        async with TestServer(app) as server:
            async with TestClient(server) as client:
                for method, path, options in requests:
                    response = await client.request(method, path, **options)
                    if response.content_type == "application/json":
                        body = await response.json()
                    else:
                        body = await response.text()
                    answers.append((response.status, body, dict(response.headers)))
        return answers

    return asyncio.run(runner())


def test_ping_and_metrics(engine) -> None:
    (ping, metrics) = _run(engine, [("GET", "/ping", {}), ("GET", "/metrics", {})])

    assert ping[0] == 200
    assert ping[1] == {"status": "ok"}
    assert ping[2]["Access-Control-Allow-Origin"] == "*"
    assert metrics[0] == 200
    assert "wallet_operations_total" in metrics[1]


def test_preflight_is_answered_without_body(engine) -> None:
    ((status, _, headers),) = _run(engine, [("OPTIONS", "/withdraw", {})])

    assert status == 204
    assert "X-Admin-Password" in headers["Access-Control-Allow-Headers"]


def test_get_balance(engine, store) -> None:
    seed_balances(store, {"123": 3200})

    ((status, body, _),) = _run(engine, [("POST", "/get-balance", {"json": {"telegramId": "123"}})])

    assert status == 200
    assert body == {"ngn": 3200, "usd": 2.0, "usdRate": 1600.0}


def test_withdraw_flow(engine, store, notifier) -> None:
    seed_balances(store, {"123": 5000})

    issued, withdrawn = _run(
        engine,
        [
            ("POST", "/generate-passcode", {"json": {"telegramId": "123"}}),
            (
                "POST",
                "/withdraw",
                {"json": {"telegramId": "123", "amount": 1500, "passcode": PASSCODE, "method": "bank"}},
            ),
        ],
    )

    assert issued[0] == 200
    assert issued[1]["success"] is True
    assert issued[1]["purpose"] == "withdraw"
    assert withdrawn == (200, {"newBalance": 3500}, withdrawn[2])
    assert stored_balances(store) == {"123": 3500}


def test_withdraw_errors(engine, store) -> None:
    seed_balances(store, {"123": 500})

    answers = _run(
        engine,
        [
            ("POST", "/withdraw", {"json": {"telegramId": "123", "amount": "abc", "passcode": PASSCODE}}),
            ("POST", "/withdraw", {"json": {"telegramId": "123", "amount": 100, "passcode": PASSCODE}}),
            ("POST", "/generate-passcode", {"json": {"telegramId": "123"}}),
            ("POST", "/withdraw", {"json": {"telegramId": "123", "amount": 800, "passcode": PASSCODE}}),
            ("POST", "/withdraw", {"data": "not json", "headers": {"Content-Type": "application/json"}}),
        ],
    )

    bad_amount, no_code, _, short, garbage = answers
    assert bad_amount[0] == 400
    assert no_code[0] == 400
    assert no_code[1]["reason"] == "not_found"
    assert short[0] == 400
    assert short[1]["shortfall"] == 300
    assert (short[1]["required"], short[1]["available"]) == (800, 500)
    assert garbage == (400, {"error": "Invalid request"}, garbage[2])
    assert stored_balances(store) == {"123": 500}


def test_passcode_cooldown_is_429(engine, kv, notifier, clock) -> None:
    engine.passcodes = PasscodeAuthority(kv, notifier, cooldown_seconds=30, clock=clock)

    first, second = _run(
        engine,
        [
            ("POST", "/generate-passcode", {"json": {"telegramId": "123"}}),
            ("POST", "/generate-passcode", {"json": {"telegramId": "123"}}),
        ],
    )

    assert first[0] == 200
    assert second[0] == 429
    assert second[2]["Retry-After"] == "30"


def test_premium_purchase_requires_secret(engine, store) -> None:
    seed_balances(store, {"buyer": 6000})

    answers = _run(
        engine,
        [
            ("POST", "/generate-passcode", {"json": {"telegramId": "buyer", "purpose": "premium"}}),
            (
                "POST",
                "/api/premium-purchase",
                {"json": {"telegramId": "buyer", "passcode": PASSCODE, "secretKey": "wrong"}},
            ),
            (
                "POST",
                "/api/premium-purchase",
                {
                    "json": {
                        "telegramId": "buyer",
                        "passcode": PASSCODE,
                        "secretKey": "pw",
                        "groupOwnerId": "owner",
                        "groupName": "Makers",
                    }
                },
            ),
        ],
    )

    _, denied, bought = answers
    assert denied[0] == 401
    assert bought[0] == 200
    assert bought[1]["newBuyerBalance"] == 1000
    assert bought[1]["newOwnerBalance"] == 2500
    assert bought[1]["ownerEarnedNgn"] == 2500
    assert stored_balances(store) == {"buyer": 1000, "owner": 2500}


def test_promo_unlock_and_duplicate(engine, store) -> None:
    seed_balances(store, {"123": 3000})
    unlock = {"json": {"telegramId": "123", "passcode": PASSCODE}}
    issue = {"json": {"telegramId": "123", "purpose": "promo"}}

    _, first, _, second = _run(
        engine,
        [
            ("POST", "/generate-passcode", issue),
            ("POST", "/unlock-promo", unlock),
            ("POST", "/generate-passcode", issue),
            ("POST", "/unlock-promo", unlock),
        ],
    )

    assert first[0] == 200
    assert first[1]["newBalance"] == 2000
    assert first[1]["status"] == "completed"
    assert second[0] == 409
    assert stored_balances(store) == {"123": 2000}


def test_unlock_promo_with_image_is_a_proof_submission(engine, notifier) -> None:
    ((status, body, _),) = _run(
        engine,
        [
            (
                "POST",
                "/unlock-promo",
                {"json": {"telegramId": "123", "image": "aGVsbG8=", "type": "payment", "name": "Ada"}},
            )
        ],
    )

    assert status == 200
    assert body["success"] is True
    assert notifier.photos[-1][0] == str(ADMIN_ID)
    assert "PROMO PAYMENT SUBMISSION" in notifier.photos[-1][1]


def test_admin_routes_require_password(engine) -> None:
    answers = _run(
        engine,
        [
            ("POST", "/admin/get-balance", {"json": {"telegramId": "1"}}),
            ("POST", "/admin/update-balance", {"json": {"telegramId": "1"}, "headers": {"X-Admin-Password": "nope"}}),
            ("GET", "/admin/promo-members", {}),
            ("POST", "/admin/reconcile", {}),
            ("GET", "/admin/promo-intents", {}),
            ("POST", "/admin/promo-intents/resolve", {"json": {"intentId": "x", "status": "cancelled"}}),
        ],
    )

    assert [status for status, _, _ in answers] == [401] * 6
    assert all(body == {"error": "Unauthorized"} for _, body, _ in answers)


def test_admin_balance_updates(engine, store) -> None:
    answers = _run(
        engine,
        [
            (
                "POST",
                "/admin/update-balance",
                {"json": {"telegramId": "1", "amount": 2000, "type": "deposit"}, "headers": ADMIN_HEADERS},
            ),
            (
                "POST",
                "/admin/update-balance",
                {"json": {"telegramId": "1", "amount": 500, "type": "withdraw"}, "headers": ADMIN_HEADERS},
            ),
            (
                "POST",
                "/admin/update-balance",
                {"json": {"telegramId": "1", "type": "deposit"}, "headers": ADMIN_HEADERS},
            ),
            ("POST", "/admin/get-balance", {"json": {"telegramId": "1"}, "headers": ADMIN_HEADERS}),
        ],
    )

    deposit, withdraw, missing_amount, balance = answers
    assert deposit[1]["newBalance"] == 2000
    assert (withdraw[1]["previousBalance"], withdraw[1]["newBalance"]) == (2000, 1500)
    assert missing_amount[0] == 400
    assert balance[1]["ngn"] == 1500
    assert stored_balances(store) == {"1": 1500}


def test_admin_promo_members(engine) -> None:
    answers = _run(
        engine,
        [
            ("POST", "/admin/promo-members", {"json": {"telegramId": "7"}, "headers": ADMIN_HEADERS}),
            ("GET", "/admin/promo-members", {"headers": ADMIN_HEADERS}),
            ("DELETE", "/admin/promo-members", {"json": {"telegramId": "7"}, "headers": ADMIN_HEADERS}),
            ("DELETE", "/admin/promo-members?telegramId=7", {"headers": ADMIN_HEADERS}),
            ("POST", "/admin/reconcile", {"headers": ADMIN_HEADERS}),
        ],
    )

    added, listed, removed, missing, reconciled = answers
    assert added[1] == {"added": True, "members": ["7"]}
    assert listed[1] == {"members": ["7"]}
    assert removed[1] == {"removed": True, "members": []}
    assert missing[0] == 404
    assert reconciled[0] == 200
    assert reconciled[1] == {
        "completed": [],
        "refunded": [],
        "flagged": [],
        "retrying": [],
        "failed": [],
        "pruned": [],
    }


def test_admin_resolves_promo_intent_in_review(engine, clock) -> None:
    intent = asyncio.run(engine.intents.create("5", 1000))
    clock.advance(1800)
    resolve = "/admin/promo-intents/resolve"

    answers = _run(
        engine,
        [
            ("POST", "/admin/reconcile", {"headers": ADMIN_HEADERS}),
            ("GET", "/admin/promo-intents?status=needs_review", {"headers": ADMIN_HEADERS}),
            ("POST", resolve, {"json": {"intentId": intent.id, "status": "cancelled"}, "headers": ADMIN_HEADERS}),
            ("POST", resolve, {"json": {"intentId": intent.id, "status": "debited"}, "headers": ADMIN_HEADERS}),
            ("POST", resolve, {"json": {"intentId": "nope", "status": "cancelled"}, "headers": ADMIN_HEADERS}),
            ("GET", "/admin/promo-intents?status=bogus", {"headers": ADMIN_HEADERS}),
        ],
    )

    reconciled, listed, cancelled, again, unknown, bad_filter = answers
    assert reconciled[1]["flagged"] == [intent.id]
    assert [item["id"] for item in listed[1]["intents"]] == [intent.id]
    assert listed[1]["intents"][0]["status"] == "needs_review"
    assert cancelled[0] == 200
    assert cancelled[1]["intent"]["status"] == "cancelled"
    assert again[0] == 400
    assert unknown == (404, {"error": "unknown promo intent nope"}, unknown[2])
    assert bad_filter[0] == 400


def test_store_outage_is_a_server_error(engine, store) -> None:
    seed_balances(store, {"1": 100})
    store.fail_next_writes(1)

    ((status, body, _),) = _run(
        engine,
        [
            (
                "POST",
                "/admin/update-balance",
                {"json": {"telegramId": "1", "amount": 50, "type": "credit"}, "headers": ADMIN_HEADERS},
            )
        ],
    )

    assert status == 500
    assert body == {"error": "Server error, please try again later"}
    assert stored_balances(store) == {"1": 100}
