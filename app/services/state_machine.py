from enum import Enum


class OrderStep(str, Enum):
    IDLE = "idle"
    QUANTITY_SELECTION = "quantity_selection"
    AWAITING_CUSTOM_QTY = "awaiting_custom_qty"
    INVOICE_REVIEW = "invoice_review"
    PAYMENT_SELECTION = "payment_selection"
    COMPLETED = "completed"


VALID_TRANSITIONS = {
    OrderStep.IDLE: [OrderStep.QUANTITY_SELECTION],
    OrderStep.QUANTITY_SELECTION: [OrderStep.INVOICE_REVIEW, OrderStep.AWAITING_CUSTOM_QTY],
    OrderStep.AWAITING_CUSTOM_QTY: [OrderStep.INVOICE_REVIEW],
    OrderStep.INVOICE_REVIEW: [OrderStep.PAYMENT_SELECTION, OrderStep.QUANTITY_SELECTION],
    OrderStep.PAYMENT_SELECTION: [OrderStep.COMPLETED],
    OrderStep.COMPLETED: [OrderStep.IDLE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: OrderStep, to_step: OrderStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def coerce_step(value) -> OrderStep:
    """Map a stored step string to OrderStep; unknown values fall back to idle."""
    try:
        return OrderStep(value)
    except ValueError:
        return OrderStep.IDLE


def can_transition(from_step: OrderStep, to_step: OrderStep) -> bool:
    """Check if transition is valid. Returning to idle is always allowed."""
    if to_step == OrderStep.IDLE:
        return True
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: OrderStep, to_step: OrderStep) -> OrderStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def cancel(current_step: OrderStep) -> OrderStep:
    """Abandon the purchase from any step."""
    return transition(current_step, OrderStep.IDLE)
