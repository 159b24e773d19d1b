from types import SimpleNamespace

import pytest

from giftvault.errors import InvalidStateTransition
from giftvault.model.order import state as st


def order(payment, fulfillment="pending"):
    return SimpleNamespace(payment_status=payment,
                           fulfillment_status=fulfillment)


@pytest.mark.parametrize("current,target", [
    ("pending", "processing"),
    ("pending", "failed"),
    ("processing", "completed"),
    ("processing", "failed"),
    ("completed", "refunded"),
    ("completed", "disputed"),
])
def test_legal_payment_transitions(current, target):
    st.check_payment(current, target)


@pytest.mark.parametrize("current,target", [
    ("pending", "completed"),
    ("failed", "completed"),
    ("refunded", "completed"),
    ("completed", "pending"),
    ("disputed", "refunded"),
])
def test_illegal_payment_transitions(current, target):
    with pytest.raises(InvalidStateTransition):
        st.check_payment(current, target)


def test_fulfillment_is_terminal_once_fulfilled():
    st.check_fulfillment("pending", "fulfilled")
    st.check_fulfillment("pending", "failed")
    for target in ("pending", "failed", "fulfilled"):
        with pytest.raises(InvalidStateTransition):
            st.check_fulfillment("fulfilled", target)


def test_failed_fulfillment_only_reopens_explicitly():
    with pytest.raises(InvalidStateTransition):
        st.check_fulfillment("failed", "pending")
    st.check_reopen("failed")
    with pytest.raises(InvalidStateTransition):
        st.check_reopen("fulfilled")


def test_guards():
    assert st.can_be_fulfilled(order("completed"))
    assert not st.can_be_fulfilled(order("processing"))
    assert not st.can_be_fulfilled(order("completed", "fulfilled"))
    assert not st.can_be_fulfilled(order("completed", "failed"))

    assert st.can_be_refunded(order("completed"))
    assert st.can_be_refunded(order("completed", "failed"))
    assert not st.can_be_refunded(order("completed", "fulfilled"))
    assert not st.can_be_refunded(order("pending"))


def test_require_fulfillable_names_the_blocking_axis():
    with pytest.raises(InvalidStateTransition, match="payment is pending"):
        st.require_fulfillable(order("pending"))
    with pytest.raises(InvalidStateTransition, match="fulfillment is failed"):
        st.require_fulfillable(order("completed", "failed"))
