from unittest.mock import Mock

import pytest

from fleet_telemetry.agents import AgentState
from fleet_telemetry.config import ENTITY_TYPE_CACHE_SIZE
from fleet_telemetry.event_tracker import AgentEventTracker
from fleet_telemetry.models import InstanceDetails, KillDetails, LevelUpDetails, ServerDetails


@pytest.fixture
def agent():
    return AgentState(id="warrior1", owner="acct-a", level=10, map="main", server="USI")


@pytest.fixture
def aggregator():
    return Mock()


@pytest.fixture
def tracker(aggregator, agent, clock):
    entities = {"m1": "goo", "m2": "bee"}
    return AgentEventTracker(aggregator, agent, entity_types=entities.get, clock=clock)


def logged(aggregator):
    return [c.args for c in aggregator.log_event.call_args_list]


def test_kill_uses_type_captured_on_action(tracker, aggregator):
    tracker.on_action({"attacker": "warrior1", "target": "m1"})
    tracker.on_hit({"kill": True, "hid": "warrior1", "id": "m1", "damage": 80})

    assert logged(aggregator) == [("kill", "warrior1", "Killed goo", KillDetails(monster="goo", damage=80))]
    assert "m1" not in tracker.targets


def test_kill_of_untracked_entity_says_monster(tracker, aggregator):
    tracker.on_hit({"kill": True, "hid": "warrior1", "id": "unknown"})

    assert logged(aggregator)[0][2] == "Killed monster"


def test_hits_by_others_and_non_kills_ignored(tracker, aggregator):
    tracker.on_hit({"kill": True, "hid": "priest1", "id": "m1"})
    tracker.on_hit({"kill": False, "hid": "warrior1", "id": "m1"})
    tracker.on_action({"attacker": "priest1", "target": "m2"})

    aggregator.log_event.assert_not_called()
    assert tracker.targets == {}


def test_entity_type_cache_is_bounded(aggregator, agent, clock):
    tracker = AgentEventTracker(aggregator, agent, entity_types=lambda _id: "goo", clock=clock)

    for i in range(ENTITY_TYPE_CACHE_SIZE + 5):
        tracker.on_action({"attacker": "warrior1", "target": f"e{i}"})

    assert len(tracker.targets) == ENTITY_TYPE_CACHE_SIZE
    assert "e0" not in tracker.targets
    assert f"e{ENTITY_TYPE_CACHE_SIZE + 4}" in tracker.targets


def test_death_only_for_own_character(tracker, aggregator):
    tracker.on_death({"id": "priest1"})
    tracker.on_death({"id": "warrior1"})

    assert [args[0] for args in logged(aggregator)] == ["death"]


def test_party_first_roster_silent_then_diffs(tracker, aggregator):
    tracker.on_party_update({"list": ["warrior1", "priest1"]})
    tracker.on_party_update({"list": ["warrior1", "priest1", "merchant1"]})
    tracker.on_party_update({"list": ["warrior1", "merchant1"]})
    tracker.on_party_update({"list": ["warrior1", "merchant1"]})

    messages = [args[2] for args in logged(aggregator)]
    assert messages == ["merchant1 joined party", "priest1 left party"]


def test_party_changes_only_logged_by_leader(tracker, aggregator):
    tracker.on_party_update({"list": ["priest1", "warrior1"]})
    tracker.on_party_update({"list": ["priest1", "warrior1", "merchant1"]})
    tracker.on_party_update({"list": []})

    aggregator.log_event.assert_not_called()


@pytest.mark.parametrize("response,message,success", [
    ("upgrade_success", "Upgrade Success", True),
    ("upgrade_fail", "Upgrade Failed", False),
    ("compound_success", "Compound Success", True),
    ("compound_fail", "Compound Failed", False),
])
def test_upgrade_responses(tracker, aggregator, response, message, success):
    tracker.on_game_response({"response": response})

    assert logged(aggregator) == [("upgrade", "warrior1", message, {"success": success})]


def test_buy_response_needs_item_name(tracker, aggregator):
    tracker.on_game_response({"response": "buy_success"})
    tracker.on_game_response({"response": "buy_success", "name": "hpot0"})
    tracker.on_game_response({"response": "cant_move"})

    assert logged(aggregator) == [("buy", "warrior1", "Bought hpot0", {"item": "hpot0"})]


def test_levelup_with_cooldown(tracker, aggregator, clock):
    tracker.on_player({"level": 11})
    clock.advance(5_000)
    tracker.on_player({"level": 12})  # within cooldown, suppressed
    clock.advance(10_001)
    tracker.on_player({"level": 13})

    assert logged(aggregator) == [
        ("levelup", "warrior1", "Reached level 11!", LevelUpDetails(level=11, from_level=10)),
        ("levelup", "warrior1", "Reached level 13!", LevelUpDetails(level=13, from_level=12)),
    ]


def test_no_levelup_when_starting_level_unknown(aggregator, clock):
    tracker = AgentEventTracker(aggregator, AgentState(id="w", level=0), clock=clock)

    tracker.on_player({"level": 5})

    aggregator.log_event.assert_not_called()
    assert tracker.last_level == 5


def test_server_hop_detected(tracker, aggregator, agent):
    tracker.on_player({})
    agent.server = "EUII"
    tracker.on_player({})

    assert logged(aggregator) == [("server", "warrior1", "Hopped to EUII",
                                   ServerDetails(from_server="USI", to_server="EUII"))]


def test_instance_entry_only_when_instance_differs(tracker, aggregator):
    tracker.on_player({"map": "halloween", "in": "halloween"})
    tracker.on_player({"map": "crypt", "in": "abc123"})
    tracker.on_player({"map": "crypt", "in": "abc123"})

    assert logged(aggregator) == [("instance", "warrior1", "Entered crypt instance",
                                   InstanceDetails(map="crypt", instance="abc123"))]


def test_callbacks_cover_all_socket_events(tracker):
    assert set(tracker.callbacks()) == {"action", "hit", "death", "party_update", "game_response", "player"}
