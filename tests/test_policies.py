# tests/test_policies.py
import pytest

from balance_service.errors import InsufficientFunds, UnknownUser
from balance_service.store import BalanceStore


def test_negative_balance_rejected_by_default(store):
    store.set_balance(1, "gold", 3)
    with pytest.raises(InsufficientFunds) as ei:
        store.adjust_balance(1, "gold", -4)
    assert ei.value.ctx["available"] == 3
    assert ei.value.ctx["delta"] == -4
    assert "insufficient balance" in str(ei.value)
    assert "user_id=1" in str(ei.value)


def test_draining_to_zero_is_allowed(store):
    store.set_balance(1, "gold", 3)
    assert store.adjust_balance(1, "gold", -3) == {"gold": 0}


def test_negative_balance_allowed_when_configured(engine, settings, clock):
    settings.allow_negative = True
    store = BalanceStore(engine, settings, clock=clock)
    assert store.adjust_balance(1, "gold", -4) == {"gold": -4}
    assert store.adjust_balance(1, "gold", 10) == {"gold": 6}


def test_unknown_user_rejected_without_auto_create(engine, settings, clock):
    settings.auto_create = False
    store = BalanceStore(engine, settings, clock=clock)
    with pytest.raises(UnknownUser) as ei:
        store.adjust_balance(2, "gold", 5)
    assert ei.value.user_id == 2
    with pytest.raises(UnknownUser):
        store.set_balance(2, "gold", 5)
    assert list(store.get_history(2)) == []

    store.register_user(2)
    assert store.adjust_balance(2, "gold", 5) == {"gold": 5}
