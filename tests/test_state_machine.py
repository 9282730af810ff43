import pytest

from app.services.state_machine import (
    InvalidTransitionError,
    OrderStep,
    can_transition,
    cancel,
    coerce_step,
    transition,
)


class TestValidTransitions:
    def test_idle_to_quantity_selection(self):
        assert transition(OrderStep.IDLE, OrderStep.QUANTITY_SELECTION) == OrderStep.QUANTITY_SELECTION

    def test_quantity_selection_to_invoice_review(self):
        assert transition(OrderStep.QUANTITY_SELECTION, OrderStep.INVOICE_REVIEW) == OrderStep.INVOICE_REVIEW

    def test_quantity_selection_to_custom_qty(self):
        result = transition(OrderStep.QUANTITY_SELECTION, OrderStep.AWAITING_CUSTOM_QTY)
        assert result == OrderStep.AWAITING_CUSTOM_QTY

    def test_custom_qty_to_invoice_review(self):
        assert transition(OrderStep.AWAITING_CUSTOM_QTY, OrderStep.INVOICE_REVIEW) == OrderStep.INVOICE_REVIEW

    def test_invoice_review_to_payment(self):
        assert transition(OrderStep.INVOICE_REVIEW, OrderStep.PAYMENT_SELECTION) == OrderStep.PAYMENT_SELECTION

    def test_invoice_review_back_to_quantity(self):
        assert transition(OrderStep.INVOICE_REVIEW, OrderStep.QUANTITY_SELECTION) == OrderStep.QUANTITY_SELECTION

    def test_payment_to_completed(self):
        assert transition(OrderStep.PAYMENT_SELECTION, OrderStep.COMPLETED) == OrderStep.COMPLETED


class TestInvalidTransitions:
    def test_idle_to_invoice_review(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.IDLE, OrderStep.INVOICE_REVIEW)

    def test_quantity_selection_to_completed(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.QUANTITY_SELECTION, OrderStep.COMPLETED)

    def test_custom_qty_back_to_quantity_selection(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.AWAITING_CUSTOM_QTY, OrderStep.QUANTITY_SELECTION)

    def test_error_message_names_both_steps(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(OrderStep.IDLE, OrderStep.PAYMENT_SELECTION)
        assert "idle -> payment_selection" in str(exc_info.value)
        assert exc_info.value.from_step == OrderStep.IDLE


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(OrderStep.PAYMENT_SELECTION, OrderStep.COMPLETED) is True

    def test_invalid_returns_false(self):
        assert can_transition(OrderStep.COMPLETED, OrderStep.PAYMENT_SELECTION) is False

    @pytest.mark.parametrize("step", list(OrderStep))
    def test_idle_reachable_from_every_step(self, step):
        assert can_transition(step, OrderStep.IDLE) is True


class TestCancel:
    @pytest.mark.parametrize("step", list(OrderStep))
    def test_cancel_returns_idle(self, step):
        assert cancel(step) == OrderStep.IDLE


class TestCoerceStep:
    def test_known_value(self):
        assert coerce_step("invoice_review") == OrderStep.INVOICE_REVIEW

    def test_unknown_value_is_idle(self):
        assert coerce_step("legacy_step") == OrderStep.IDLE
