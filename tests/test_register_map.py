from barbot.core.register_map import (
    COCKTAILS, CUSTOM_ID, CUSTOM_TRIGGER, INGREDIENTS, INGREDIENT_WRITE_ADDRESSES, TRIGGER_ADDRESSES,
    ControlAddress, cocktail_for_trigger, custom_cocktail, get_cocktail, list_cocktails,
    resolve_active_cocktail, resolve_ingredients, selectable_ingredients,
)


def test_write_address_is_read_address_plus_100():
    for ingredient in INGREDIENTS.values():
        assert ingredient.write_address == ingredient.read_address + 100


def test_address_roles_do_not_overlap():
    triggers = set(TRIGGER_ADDRESSES)
    writes = set(INGREDIENT_WRITE_ADDRESSES)
    reads = {i.read_address for i in INGREDIENTS.values()}
    controls = {ControlAddress.START, ControlAddress.CUP_HOLDER,
                ControlAddress.DRINK_READY, ControlAddress.WAITING_RECIPE}

    assert not triggers & writes
    assert not triggers & reads
    assert not writes & reads
    assert not controls & (triggers | writes | reads)
    assert len({c.trigger_address for c in COCKTAILS.values()} | {CUSTOM_TRIGGER}) == len(COCKTAILS) + 1


def test_mojito_recipe_order():
    mojito = COCKTAILS["mojito"]
    assert mojito.trigger_address == 100
    assert mojito.recipe == (132, 133, 135, 136, 134, 137, 140, 142, 143)
    assert mojito.steps[-1].state_key == "drinkReady"


def test_resolve_ingredients_sorts_filters_and_dedupes():
    found = resolve_ingredients(["ice", "bogus", "mint", "mint", 7])
    assert [i.id for i in found] == ["mint", "ice"]


def test_resolve_ingredients_selectable_only():
    found = resolve_ingredients(["straw", "soda", "muddling"], selectable_only=True)
    assert [i.id for i in found] == ["soda"]
    assert {"muddling", "stirring", "straw"}.isdisjoint(i.id for i in selectable_ingredients())


def test_custom_cocktail_steps_follow_selection():
    cocktail = custom_cocktail(["lime", "ice"])
    assert cocktail.id == CUSTOM_ID
    assert cocktail.trigger_address == CUSTOM_TRIGGER
    assert [s.state_key for s in cocktail.steps] == ["ice", "lime", "drinkReady"]
    assert get_cocktail(CUSTOM_ID, ["lime"]).steps[0].state_key == "lime"
    assert get_cocktail("nope") is None


def test_list_cocktails_by_category():
    whiskey = [c.id for c in list_cocktails("whiskey")]
    assert whiskey == ["whiskey-rocks", "neat-whiskey", "whiskey-highball", "whiskey-coke"]
    assert len(list_cocktails()) == len(COCKTAILS)


def test_trigger_lookup():
    assert cocktail_for_trigger(101) == "cuba-libre"
    assert cocktail_for_trigger(107) == CUSTOM_ID
    assert cocktail_for_trigger(108) is None


def test_resolve_active_cocktail_first_set_bit():
    bits = [False] * 8
    assert resolve_active_cocktail(bits) is None

    bits[1] = True
    assert resolve_active_cocktail(bits) == "cuba-libre"

    bits = [False] * 7 + [True]
    assert resolve_active_cocktail(bits) == CUSTOM_ID


def test_cocktail_to_dict_wire_keys():
    data = COCKTAILS["cuba-libre"].to_dict()
    assert data["triggerAddress"] == 101
    assert data["steps"][0] == {"label": "Adding Ice", "stateKey": "ice",
                                "description": "Adding ice cubes to the glass"}
