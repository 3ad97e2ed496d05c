import pytest

from barbot.core.errors import ProtocolError, RobotBusyError, ValidationError
from barbot.core.sequencer import WRITE_DELAY_S, CommandSequencer, plan_custom, plan_predefined


@pytest.fixture
def sequencer(connection, fake_sleep):
    return CommandSequencer(connection, sleep=fake_sleep)


def written(fake_client):
    return [address for address, value in fake_client.writes if value]


def test_mojito_sequence(sequencer, fake_client, sleeps):
    result = sequencer.order("mojito")

    assert written(fake_client) == [132, 133, 135, 136, 134, 137, 140, 142, 143, 100, 96]
    # 50 ms after every ingredient and after the trigger, none after start
    assert sleeps == [WRITE_DELAY_S] * 10
    assert result.to_dict() == {
        "success": True,
        "message": "Started preparing Mojito",
        "cocktailId": "mojito",
        "ingredientsWritten": 9,
    }


def test_readiness_checked_before_writes(sequencer, fake_client):
    sequencer.order("neat-whiskey")
    assert fake_client.reads[0] == (92, 1)
    assert written(fake_client) == [139, 104, 96]


def test_busy_robot_gets_no_writes(sequencer, fake_client):
    fake_client.set(c92=False)

    with pytest.raises(RobotBusyError) as exc:
        sequencer.order("mojito")
    assert exc.value.message == "Robot is busy preparing another drink. Please wait."
    assert fake_client.writes == []


def test_unreadable_status_does_not_block(sequencer, fake_client):
    fake_client.fail_reads[92] = 4
    sequencer.order("cognac")
    assert written(fake_client) == [138, 102, 96]


def test_custom_mint_and_ice(sequencer, fake_client):
    result = sequencer.order("custom", ["mint", "ice"])

    assert written(fake_client) == [132, 134, 133, 107, 96]
    data = result.to_dict()
    assert data["cocktailId"] == "custom"
    assert data["ingredients"] == ["mint", "ice"]
    assert data["extras"] == {"muddling": True, "stirring": False, "straw": False}


def test_custom_mixer_adds_stirring_and_straw():
    plan = plan_custom(["coke", "whiskey", "ice"])
    assert plan.writes == (134, 139, 141, 142, 143, 107, 96)
    assert plan.extras == {"muddling": False, "stirring": True, "straw": True}


def test_custom_sequence_property():
    """Selected ascending, then muddling, then stirring and straw, then trigger and start."""
    selections = [["soda"], ["mint", "soda"], ["lime", "mint"], ["white-rum", "ice", "syrup"]]
    for selection in selections:
        plan = plan_custom(selection)
        ids = set(selection)
        expected = sorted(100 + {"mint": 32, "ice": 34, "syrup": 35, "lime": 36,
                                 "white-rum": 37, "soda": 40}[i] for i in ids)
        if "mint" in ids:
            expected.append(133)
        if ids & {"soda", "coke"}:
            expected += [142, 143]
        assert list(plan.writes) == expected + [107, 96]


@pytest.mark.parametrize("ingredients", [None, [], "mint", ["bogus"], ["straw", "muddling"]])
def test_invalid_custom_selection(sequencer, fake_client, ingredients):
    with pytest.raises(ValidationError) as exc:
        sequencer.order("custom", ingredients)
    assert exc.value.status == 400
    assert fake_client.writes == []
    assert fake_client.connect_calls == 0


def test_unknown_cocktail_is_404(sequencer, fake_client):
    with pytest.raises(ValidationError) as exc:
        sequencer.order("margarita")
    assert exc.value.status == 404
    assert fake_client.connect_calls == 0


def test_failed_write_aborts_without_rollback(sequencer, fake_client, sleeps):
    fake_client.fail_writes[135] = 4

    with pytest.raises(ProtocolError):
        sequencer.order("mojito")

    assert written(fake_client) == [132, 133]
    assert fake_client.coils[132] is True
    assert all(value for _, value in fake_client.writes)


def test_plan_predefined_uses_recipe():
    plan = plan_predefined("cuba-libre")
    assert plan.writes == (134, 137, 136, 141, 142, 143, 101, 96)
