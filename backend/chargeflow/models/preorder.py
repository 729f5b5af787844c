import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class PreorderState(str, Enum):
    IN_PROGRESS = "in_progress"
    AUTHORIZATION_SUCCESSFUL = "authorization_successful"
    AUTHORIZATION_FAILED = "authorization_failed"
    CHARGE_SUCCESSFUL = "charge_successful"
    CANCELLED = "cancelled"


PREORDER_TRANSITIONS: dict[PreorderState, frozenset[PreorderState]] = {
    PreorderState.IN_PROGRESS: frozenset(
        {PreorderState.AUTHORIZATION_SUCCESSFUL, PreorderState.AUTHORIZATION_FAILED}
    ),
    PreorderState.AUTHORIZATION_SUCCESSFUL: frozenset(
        {PreorderState.CHARGE_SUCCESSFUL, PreorderState.CANCELLED}
    ),
    PreorderState.AUTHORIZATION_FAILED: frozenset(),
    PreorderState.CHARGE_SUCCESSFUL: frozenset(),
    PreorderState.CANCELLED: frozenset(),
}


class InvalidPreorderTransition(Exception):
    """Raised when a preorder is moved to a state its current state cannot reach."""


class Preorder(Base):
    __tablename__ = "preorders"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    product_id = Column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    email = Column(String(255), nullable=False)
    state = Column(String(30), nullable=False, default=PreorderState.IN_PROGRESS.value, index=True)
    payment_method_id = Column(String(255), nullable=True)
    auto_cancelled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def transition_to(self, state: PreorderState) -> None:
        current = PreorderState(self.state)
        if state not in PREORDER_TRANSITIONS[current]:
            raise InvalidPreorderTransition(
                f"Preorder {self.id} cannot move from {current.value} to {state.value}"
            )
        self.state = state.value  # type: ignore[assignment]
