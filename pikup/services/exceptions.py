# pikup/services/exceptions.py
from pikup.core.exceptions import PikupError, PolicyViolation


class OrderNotFoundError(PikupError):
    def __init__(self, order_id: str):
        super().__init__(f"Order '{order_id}' not found.")
        self.order_id = order_id


class OrderAlreadyClaimedError(PolicyViolation):
    """Another driver accepted the order first."""

    def __init__(self, order_id: str):
        super().__init__("This request has already been accepted by another driver.")
        self.order_id = order_id


class NotOrderParticipantError(PolicyViolation):
    def __init__(self, order_id: str, uid: str):
        super().__init__("You are not assigned to this order.")
        self.order_id = order_id
        self.uid = uid


class CancellationInProgressError(PolicyViolation):
    """The customer started cancelling the order; drivers cannot move or take it meanwhile."""

    def __init__(self, order_id: str):
        super().__init__("The customer is cancelling this request.")
        self.order_id = order_id
