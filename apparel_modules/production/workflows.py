"""
Production order status machine.

``issue`` and ``move_stage`` are self-loops on IN_PROGRESS: they are only
legal while the order is in progress but do not change its status.
``reopen`` takes a completed order back to IN_PROGRESS when its completion
posting is reversed.
"""

from dataclasses import dataclass

from apparel_kernel.exceptions import InvalidOrderTransitionError
from apparel_modules.production.models import ProductionOrderStatus as S


@dataclass(frozen=True)
class Transition:
    from_state: str
    action: str
    to_state: str
    # Precondition checked by the service before it applies the transition
    requires: str | None = None


@dataclass(frozen=True)
class OrderWorkflow:
    initial_state: str
    transitions: tuple[Transition, ...]

    @property
    def states(self) -> frozenset[str]:
        return frozenset(
            state for t in self.transitions for state in (t.from_state, t.to_state)
        )

    def actions_from(self, state: str) -> tuple[str, ...]:
        return tuple(t.action for t in self.transitions if t.from_state == state)

    def transition(self, order_number: str, from_state: str, action: str) -> Transition:
        """
        Raises:
            InvalidOrderTransitionError: ``action`` is not allowed in ``from_state``.
        """
        allowed = {(t.from_state, t.action): t for t in self.transitions}
        found = allowed.get((from_state, action))
        if found is not None:
            return found
        target = next((t.to_state for t in self.transitions if t.action == action), action)
        raise InvalidOrderTransitionError(order_number, from_state, target)


PRODUCTION_ORDER_WORKFLOW = OrderWorkflow(
    initial_state=S.PLANNED.value,
    transitions=(
        Transition(S.PLANNED.value, "release", S.RELEASED.value, requires="materials_available"),
        Transition(S.PLANNED.value, "cancel", S.CANCELLED.value),
        Transition(S.RELEASED.value, "start", S.IN_PROGRESS.value),
        Transition(S.RELEASED.value, "cancel", S.CANCELLED.value),
        Transition(S.IN_PROGRESS.value, "issue", S.IN_PROGRESS.value),
        Transition(S.IN_PROGRESS.value, "move_stage", S.IN_PROGRESS.value),
        Transition(S.IN_PROGRESS.value, "complete", S.COMPLETED.value, requires="final_stage_reached"),
        Transition(S.COMPLETED.value, "close", S.CLOSED.value, requires="wip_cleared"),
        Transition(S.COMPLETED.value, "reopen", S.IN_PROGRESS.value, requires="completion_reversed"),
    ),
)
