import pytest

from conftest import ADMIN_ID, PASSCODE, seed_balances, stored_balances
from ledger.errors import InsufficientFunds
from wallet.engine import CostTable, parse_amount
from wallet.errors import AmountInvalid, PasscodeRejected, ValidationError
from wallet.passcodes import Outcome, Purpose


def _admin_messages(notifier) -> list[str]:
    return [text for chat_id, text in notifier.sent if chat_id == str(ADMIN_ID)]


@pytest.mark.asyncio
async def test_get_balance_converts_with_rate(engine, store) -> None:
    seed_balances(store, {"123": 3200})

    view = await engine.get_balance("123")
    assert view.balance_minor == 3200
    assert view.rate == 1600.0
    assert view.converted == 2.0

    empty = await engine.get_balance(None)
    assert (empty.balance_minor, empty.converted) == (0, 0.0)
    assert store.writes == []


@pytest.mark.asyncio
async def test_withdraw_happy_path(engine, store, notifier) -> None:
    seed_balances(store, {"123": 5000})
    await engine.issue_passcode("123", "withdraw")

    result = await engine.withdraw("123", 2000, PASSCODE, method="crypto", details={"wallet": "T9x"})

    assert (result.previous_balance, result.balance_minor) == (5000, 3000)
    assert stored_balances(store) == {"123": 3000}
    admin = _admin_messages(notifier)[-1]
    assert "WITHDRAW REQUEST" in admin
    assert "($1.25)" in admin
    assert notifier.sent[-1][0] == "123"


@pytest.mark.asyncio
async def test_withdraw_validates_amount_before_touching_passcode(engine, store, passcodes) -> None:
    seed_balances(store, {"123": 5000})
    await engine.issue_passcode("123", "withdraw")

    for bad in (0, -5, "abc", 10.5, None):
        with pytest.raises(AmountInvalid):
            await engine.withdraw("123", bad, PASSCODE)

    assert await passcodes.validate("123", PASSCODE, Purpose.WITHDRAW) is Outcome.ACCEPTED


@pytest.mark.asyncio
async def test_withdraw_with_expired_passcode(engine, store, clock) -> None:
    seed_balances(store, {"123": 5000})
    await engine.issue_passcode("123", "withdraw")
    clock.advance(301)

    with pytest.raises(PasscodeRejected) as info:
        await engine.withdraw("123", 100, PASSCODE)
    assert info.value.outcome is Outcome.EXPIRED
    assert stored_balances(store) == {"123": 5000}


@pytest.mark.asyncio
async def test_withdraw_more_than_balance(engine, store) -> None:
    seed_balances(store, {"123": 500})
    await engine.issue_passcode("123", "withdraw")
    writes_before = len(store.writes)

    with pytest.raises(InsufficientFunds):
        await engine.withdraw("123", 501, PASSCODE)

    assert len(store.writes) == writes_before
    assert stored_balances(store) == {"123": 500}


@pytest.mark.asyncio
async def test_premium_purchase_splits_with_owner(engine, store, notifier) -> None:
    seed_balances(store, {"buyer": 5000, "owner": 0})
    await engine.issue_passcode("buyer", "premium")

    result = await engine.premium_purchase(
        "buyer", PASSCODE, "owner", buyer_name="Ada <script>", group_name="Makers"
    )

    assert result.buyer_balance == 0
    assert result.owner_balance == 2500
    assert result.owner_earned == 2500
    assert result.cost_converted == 3.12
    assert stored_balances(store) == {"buyer": 0, "owner": 2500}
    recipients = {chat_id for chat_id, _ in notifier.sent}
    assert {"buyer", "owner", str(ADMIN_ID)} <= recipients
    assert all("<script>" not in text for _, text in notifier.sent)


@pytest.mark.asyncio
async def test_premium_purchase_by_owner_is_a_direct_purchase(engine, store) -> None:
    seed_balances(store, {"buyer": 7000})
    await engine.issue_passcode("buyer", "premium")

    result = await engine.premium_purchase("buyer", PASSCODE, "buyer")

    assert result.owner is None
    assert result.owner_balance is None
    assert result.owner_earned == 0
    assert stored_balances(store) == {"buyer": 2000}


@pytest.mark.asyncio
async def test_premium_purchase_reports_shortfall(engine, store) -> None:
    seed_balances(store, {"buyer": 1200})
    await engine.issue_passcode("buyer", "premium")

    with pytest.raises(InsufficientFunds) as info:
        await engine.premium_purchase("buyer", PASSCODE, "owner")
    assert info.value.shortfall == 3800


@pytest.mark.asyncio
async def test_withdraw_code_cannot_authorise_premium(engine, store) -> None:
    seed_balances(store, {"buyer": 9000})
    await engine.issue_passcode("buyer", "withdraw")

    with pytest.raises(PasscodeRejected) as info:
        await engine.premium_purchase("buyer", PASSCODE)
    assert info.value.outcome is Outcome.NOT_FOUND


@pytest.mark.asyncio
async def test_admin_adjustment_credit_and_debit(engine, store, notifier) -> None:
    credit = await engine.admin_adjustment("123", 1500, "deposit")
    assert (credit.direction, credit.previous_balance, credit.balance_minor) == ("credit", 0, 1500)

    debit = await engine.admin_adjustment("123", "500", "debit")
    assert (debit.direction, debit.previous_balance, debit.balance_minor) == ("debit", 1500, 1000)

    with pytest.raises(InsufficientFunds):
        await engine.admin_adjustment("123", 1001, "withdraw")
    with pytest.raises(ValidationError):
        await engine.admin_adjustment("123", 10, "transfer")
    with pytest.raises(AmountInvalid):
        await engine.admin_adjustment("123", 0, "credit")

    assert stored_balances(store) == {"123": 1000}
    assert any("ADMIN ACTION" in text for text in _admin_messages(notifier))


@pytest.mark.asyncio
async def test_submit_promo_proof_forwards_image(engine, notifier) -> None:
    await engine.submit_promo_proof("123", "data:image/png;base64,aGVsbG8=", kind="task", name="Ada")

    chat_id, caption = notifier.photos[-1]
    assert chat_id == str(ADMIN_ID)
    assert "PROMO TASK SUBMISSION" in caption
    assert notifier.sent[-1][0] == "123"

    with pytest.raises(ValidationError):
        await engine.submit_promo_proof("123", "")


def test_parse_amount() -> None:
    assert parse_amount(5) == 5
    assert parse_amount(5.0) == 5
    assert parse_amount(" 42 ") == 42
    for bad in (True, "1e3", "-1", 0, 2.5, [1]):
        with pytest.raises(AmountInvalid):
            parse_amount(bad)


def test_cost_table_rejects_owner_share_above_cost() -> None:
    with pytest.raises(ValueError):
        CostTable(premium_cost=5000, owner_share=5000, promo_fee=1000)
