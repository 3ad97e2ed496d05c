"""
Command sequencing for cocktail orders.

An order is a fixed series of single-coil writes: every ingredient command
in domain order, then the cocktail trigger, then the global start signal.
Writes are strictly sequential with a pacing delay between them. A failed
write aborts the sequence; writes already issued stay in place until the
reset routine clears them.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..logger import get_logger, LogLevel
from .connection import ConnectionManager, ModbusLink
from .errors import BarBotError, RobotBusyError, ValidationError
from .register_map import (
    COCKTAILS, CUSTOM_ID, CUSTOM_TRIGGER, MIXERS, MUDDLING, STIRRING, STRAW,
    ControlAddress, resolve_ingredients,
)


WRITE_DELAY_S = 0.05


@dataclass(frozen=True)
class OrderPlan:
    """Ordered coil writes for one order; every write sets the coil to True."""
    cocktail_id: str
    name: str
    ingredient_addresses: Tuple[int, ...]
    trigger_address: int
    ingredients: Tuple[str, ...] = ()
    extras: Dict[str, bool] = field(default_factory=dict)

    @property
    def writes(self) -> Tuple[int, ...]:
        return self.ingredient_addresses + (self.trigger_address, ControlAddress.START)


@dataclass
class OrderResult:
    plan: OrderPlan
    written: List[int]

    def to_dict(self) -> dict:
        plan = self.plan
        if plan.cocktail_id == CUSTOM_ID:
            return {
                "success": True,
                "message": "Custom cocktail order placed",
                "cocktailId": CUSTOM_ID,
                "ingredients": list(plan.ingredients),
                "extras": dict(plan.extras),
                "ingredientsWritten": len(plan.ingredient_addresses),
            }
        return {
            "success": True,
            "message": f"Started preparing {plan.name}",
            "cocktailId": plan.cocktail_id,
            "ingredientsWritten": len(plan.ingredient_addresses),
        }


def plan_predefined(cocktail_id: str) -> OrderPlan:
    cocktail = COCKTAILS.get(cocktail_id)
    if cocktail is None:
        raise ValidationError(f"Cocktail {cocktail_id} not found", status=404)
    return OrderPlan(
        cocktail_id=cocktail.id,
        name=cocktail.name,
        ingredient_addresses=cocktail.recipe,
        trigger_address=cocktail.trigger_address,
    )


def plan_custom(ingredient_ids: Sequence[str]) -> OrderPlan:
    """
    Plan a custom drink.

    Selected ingredients are written in ascending address order, then
    muddling when mint is present, then stirring and straw when soda or
    coke is present. Raises ValidationError when nothing resolves.
    """
    if not isinstance(ingredient_ids, (list, tuple)) or not ingredient_ids:
        raise ValidationError("No ingredients selected")

    selected = resolve_ingredients(ingredient_ids, selectable_only=True)
    if not selected:
        raise ValidationError("No valid ingredients selected")

    ids = {i.id for i in selected}
    has_mint = "mint" in ids
    has_mixer = bool(ids & MIXERS)

    addresses = [i.write_address for i in sorted(selected, key=lambda i: i.write_address)]
    if has_mint:
        addresses.append(MUDDLING.write_address)
    if has_mixer:
        addresses.extend([STIRRING.write_address, STRAW.write_address])

    return OrderPlan(
        cocktail_id=CUSTOM_ID,
        name="Custom Drink",
        ingredient_addresses=tuple(addresses),
        trigger_address=CUSTOM_TRIGGER,
        ingredients=tuple(i.id for i in selected),
        extras={"muddling": has_mint, "stirring": has_mixer, "straw": has_mixer},
    )


class CommandSequencer:
    """Executes order plans against the robot."""

    def __init__(self, connection: ConnectionManager,
                 write_delay: float = WRITE_DELAY_S,
                 sleep: Callable[[float], None] = time.sleep):
        self._connection = connection
        self._write_delay = write_delay
        self._sleep = sleep
        self._log = get_logger()

    def plan(self, cocktail_id: str, ingredients: Optional[Sequence[str]] = None) -> OrderPlan:
        if cocktail_id == CUSTOM_ID:
            return plan_custom(ingredients)
        return plan_predefined(cocktail_id)

    def order(self, cocktail_id: str, ingredients: Optional[Sequence[str]] = None) -> OrderResult:
        """Validate, check readiness, and run the write sequence."""
        plan = self.plan(cocktail_id, ingredients)
        link = self._connection.acquire()
        self._check_ready(link)
        return self.execute(link, plan)

    def _check_ready(self, link: ModbusLink) -> None:
        """Busy robot blocks the order; an unreadable flag does not."""
        try:
            waiting = link.read_coils(ControlAddress.WAITING_RECIPE, 1)[0]
        except BarBotError as e:
            self._log.order(
                f"Could not read robot status at address {ControlAddress.WAITING_RECIPE}: {e}",
                level=LogLevel.WARNING
            )
            return

        self._log.order(f"Robot status check - address {ControlAddress.WAITING_RECIPE} (waitingRecipe) = {int(waiting)}")
        if not waiting:
            raise RobotBusyError()

    def execute(self, link: ModbusLink, plan: OrderPlan) -> OrderResult:
        written: List[int] = []
        self._log.order(f"Writing ingredients for {plan.name}: {list(plan.ingredient_addresses)}")

        for address in plan.ingredient_addresses:
            self._write(link, address, plan, written)
            self._sleep(self._write_delay)

        self._log.order(f"Triggering {plan.cocktail_id} at address {plan.trigger_address}")
        self._write(link, plan.trigger_address, plan, written)
        self._sleep(self._write_delay)

        self._write(link, ControlAddress.START, plan, written)
        self._log.order(f"Activated start signal at address {ControlAddress.START}")
        return OrderResult(plan, written)

    def _write(self, link: ModbusLink, address: int, plan: OrderPlan, written: List[int]) -> None:
        try:
            link.write_coil(address, True)
        except BarBotError as e:
            self._log.order(
                f"Sequence for {plan.cocktail_id} aborted at address {address} "
                f"after {len(written)} writes: {e}",
                level=LogLevel.ERROR
            )
            raise
        written.append(address)
        self._log.modbus(f"Address {address} = 1")
