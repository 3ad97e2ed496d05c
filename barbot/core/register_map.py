"""
Device register map for the bartending robot.

Static tables translating ingredients, cocktails and control signals to
Modbus coil addresses. Everything here is immutable; custom cocktails are
synthesized on demand from an ingredient selection.

Coil layout:
    32-43    ingredient in-progress flags (read)
    90-92    cup holder, drink ready, waiting recipe (read)
    96       start signal (write)
    100-107  cocktail triggers, 107 = custom (write)
    132-143  ingredient commands (write)
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


COIL_RANGE = (0, 199)


class ControlAddress:
    """Control signal coils."""
    START = 96
    CUP_HOLDER = 90
    DRINK_READY = 91
    WAITING_RECIPE = 92


# Batched read blocks: (first address, count)
STEP_BLOCK = (32, 10)
SYSTEM_BLOCK = (90, 3)
TRIGGER_BLOCK = (100, 8)

CUSTOM_ID = "custom"
CUSTOM_TRIGGER = 107

CONTROL_SIGNALS: Mapping[str, int] = MappingProxyType({
    "START": ControlAddress.START,
    "DRINK_READY": ControlAddress.DRINK_READY,
    "WAITING_RECIPE": ControlAddress.WAITING_RECIPE,
})


@dataclass(frozen=True)
class Ingredient:
    """One dispensable ingredient or preparation action."""
    id: str
    label: str
    state_key: str
    read_address: int
    write_address: int
    description: str = ""
    selectable: bool = True  # False for actions implied by other ingredients


@dataclass(frozen=True)
class CocktailStep:
    """Observable preparation step, bound to a robot state key."""
    label: str
    state_key: str
    description: str = ""


@dataclass(frozen=True)
class Cocktail:
    """Predefined or synthesized cocktail."""
    id: str
    name: str
    trigger_address: int
    category: str
    steps: Tuple[CocktailStep, ...]
    recipe: Tuple[int, ...] = ()  # Ingredient write addresses in execution order

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "triggerAddress": self.trigger_address,
            "steps": [
                {"label": s.label, "stateKey": s.state_key, "description": s.description}
                for s in self.steps
            ],
        }


def _ingredient(id_, label, state_key, read, description, selectable=True):
    return Ingredient(id_, label, state_key, read, read + 100, description, selectable)


_INGREDIENT_LIST = (
    _ingredient("mint", "Placing Mint", "mint", 32, "Placing mint leaves in the glass"),
    _ingredient("muddling", "Muddling", "muddling", 33, "Muddling the ingredients", selectable=False),
    _ingredient("ice", "Adding Ice", "ice", 34, "Adding ice cubes to the glass"),
    _ingredient("syrup", "Pouring Syrup", "syrup", 35, "Pouring syrup into the glass"),
    _ingredient("lime", "Adding Lime", "lime", 36, "Pouring lime into the glass"),
    _ingredient("white-rum", "Pouring White Rum", "whiteRum", 37, "Pouring white rum into the glass"),
    _ingredient("cognac", "Pouring Cognac", "cognac", 38, "Pouring cognac into the glass"),
    _ingredient("whiskey", "Pouring Whiskey", "whiskey", 39, "Pouring whiskey into the glass"),
    _ingredient("soda", "Adding Soda", "soda", 40, "Pouring soda into the glass"),
    _ingredient("coke", "Adding Coke", "coke", 41, "Pouring coke into the glass"),
    _ingredient("stirring", "Stirring", "stirring", 42, "Stirring the drink", selectable=False),
    _ingredient("straw", "Adding Straw", "straw", 43, "Adding a straw", selectable=False),
)

INGREDIENTS: Mapping[str, Ingredient] = MappingProxyType({i.id: i for i in _INGREDIENT_LIST})

MUDDLING = INGREDIENTS["muddling"]
STIRRING = INGREDIENTS["stirring"]
STRAW = INGREDIENTS["straw"]

# Ingredients that imply the stirring and straw actions
MIXERS = frozenset({"soda", "coke"})

DRINK_READY_STEP = CocktailStep("Drink Ready", "drinkReady", "The process is finished")


def _step(ingredient_id: str) -> CocktailStep:
    ing = INGREDIENTS[ingredient_id]
    return CocktailStep(ing.label, ing.state_key, ing.description)


def _cocktail(id_, name, trigger, category, step_ids, recipe_ids):
    steps = tuple(_step(i) for i in step_ids) + (DRINK_READY_STEP,)
    recipe = tuple(INGREDIENTS[i].write_address for i in recipe_ids)
    return Cocktail(id_, name, trigger, category, steps, recipe)


_COCKTAIL_LIST = (
    _cocktail(
        "mojito", "Mojito", 100, "rum",
        ["mint", "muddling", "ice", "syrup", "lime", "white-rum", "soda"],
        ["mint", "muddling", "syrup", "lime", "ice", "white-rum", "soda", "stirring", "straw"],
    ),
    _cocktail(
        "cuba-libre", "Cuba Libre", 101, "rum",
        ["ice", "lime", "white-rum", "coke"],
        ["ice", "white-rum", "lime", "coke", "stirring", "straw"],
    ),
    _cocktail("cognac", "Cognac", 102, "rum", ["cognac"], ["cognac"]),
    _cocktail(
        "whiskey-rocks", "Whiskey on the Rocks", 103, "whiskey",
        ["ice", "whiskey"], ["ice", "whiskey"],
    ),
    _cocktail("neat-whiskey", "Neat Whiskey", 104, "whiskey", ["whiskey"], ["whiskey"]),
    _cocktail(
        "whiskey-highball", "Whiskey Highball", 105, "whiskey",
        ["ice", "whiskey", "soda"],
        ["ice", "whiskey", "soda", "stirring", "straw"],
    ),
    _cocktail(
        "whiskey-coke", "Whiskey and Coke", 106, "whiskey",
        ["ice", "whiskey", "coke"],
        ["ice", "whiskey", "coke", "stirring", "straw"],
    ),
)

COCKTAILS: Mapping[str, Cocktail] = MappingProxyType({c.id: c for c in _COCKTAIL_LIST})

_BY_TRIGGER: Mapping[int, str] = MappingProxyType(
    {**{c.trigger_address: c.id for c in _COCKTAIL_LIST}, CUSTOM_TRIGGER: CUSTOM_ID}
)

TRIGGER_ADDRESSES: Tuple[int, ...] = tuple(range(TRIGGER_BLOCK[0], TRIGGER_BLOCK[0] + TRIGGER_BLOCK[1]))
INGREDIENT_WRITE_ADDRESSES: Tuple[int, ...] = tuple(i.write_address for i in _INGREDIENT_LIST)


def resolve_ingredients(ingredient_ids: Iterable[str], selectable_only: bool = False) -> List[Ingredient]:
    """
    Resolve ids to ingredients sorted by read address (execution order).

    Unknown ids are dropped; duplicates collapse.
    """
    found = {}
    for ingredient_id in ingredient_ids or ():
        ing = INGREDIENTS.get(ingredient_id) if isinstance(ingredient_id, str) else None
        if ing is None or (selectable_only and not ing.selectable):
            continue
        found[ing.id] = ing
    return sorted(found.values(), key=lambda i: i.read_address)


def custom_cocktail(ingredient_ids: Optional[Sequence[str]] = None) -> Cocktail:
    """Synthesize the custom cocktail for a selection of ingredient ids."""
    steps = tuple(
        CocktailStep(i.label, i.state_key, i.description)
        for i in resolve_ingredients(ingredient_ids or ())
    )
    return Cocktail(
        id=CUSTOM_ID,
        name="Custom Drink",
        trigger_address=CUSTOM_TRIGGER,
        category="custom",
        steps=steps + (CocktailStep("Drink Ready", "drinkReady", "Your custom drink is ready!"),),
    )


def get_cocktail(cocktail_id: str, custom_ingredients: Optional[Sequence[str]] = None) -> Optional[Cocktail]:
    """Look up a cocktail; ``custom`` is synthesized from ``custom_ingredients``."""
    if cocktail_id == CUSTOM_ID:
        return custom_cocktail(custom_ingredients)
    return COCKTAILS.get(cocktail_id)


def list_cocktails(category: Optional[str] = None) -> List[Cocktail]:
    return [c for c in _COCKTAIL_LIST if category is None or c.category == category]


def selectable_ingredients() -> List[Ingredient]:
    return [i for i in _INGREDIENT_LIST if i.selectable]


def cocktail_for_trigger(address: int) -> Optional[str]:
    """Cocktail id bound to a trigger address, or None."""
    return _BY_TRIGGER.get(address)


def resolve_active_cocktail(trigger_bits: Sequence[bool]) -> Optional[str]:
    """First set bit of the trigger block mapped to its cocktail id."""
    for offset, bit in enumerate(trigger_bits[:TRIGGER_BLOCK[1]]):
        if bit:
            return cocktail_for_trigger(TRIGGER_BLOCK[0] + offset)
    return None


def _validate() -> None:
    """Address contract checks, run once at import."""
    low, high = COIL_RANGE
    reads = [i.read_address for i in _INGREDIENT_LIST]
    writes = list(INGREDIENT_WRITE_ADDRESSES)
    triggers = [c.trigger_address for c in _COCKTAIL_LIST] + [CUSTOM_TRIGGER]
    controls = list(CONTROL_SIGNALS.values())

    for group in (reads, writes, triggers):
        if len(set(group)) != len(group):
            raise ValueError(f"Duplicate coil address in register map: {group}")

    all_addresses = reads + writes + triggers + controls
    if any(not (low <= a <= high) for a in all_addresses):
        raise ValueError("Register map address outside coil range")

    roles = [set(reads), set(writes), set(triggers), set(controls)]
    for idx, role in enumerate(roles):
        for other in roles[idx + 1:]:
            if role & other:
                raise ValueError(f"Coil address shared between roles: {sorted(role & other)}")


_validate()
