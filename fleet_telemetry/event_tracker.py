"""
Agent Event Tracker

Translates one agent's raw game-socket callbacks into telemetry events. The
game client wires each `on_*` method to the matching socket event; the tracker
keeps just enough per-agent state to suppress duplicates.
"""

import collections
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .agents import AgentState
from .config import ENTITY_TYPE_CACHE_SIZE, LEVELUP_COOLDOWN_MS
from .models import DeathDetails, InstanceDetails, KillDetails, LevelUpDetails, ServerDetails, now_ms

log = logging.getLogger("FleetTelemetry.EventTracker")

UPGRADE_RESPONSES = {
    'upgrade_success': ('Upgrade', True),
    'upgrade_fail': ('Upgrade', False),
    'compound_success': ('Compound', True),
    'compound_fail': ('Compound', False),
}


class AgentEventTracker:
    def __init__(self, aggregator, agent: AgentState,
                 entity_types: Optional[Callable[[str], Optional[str]]] = None,
                 clock: Callable[[], int] = now_ms):
        """
        Args:
            aggregator: receives the classified events via `log_event`
            agent: live state of the tracked character
            entity_types: looks up the monster type of a visible entity id
            clock: epoch milliseconds, injectable for tests
        """
        self.aggregator = aggregator
        self.agent = agent
        self.entity_types = entity_types or (lambda _id: None)
        self.clock = clock

        self.last_level = agent.level or 0
        self.last_levelup_time = 0
        self.last_server = agent.server or ''
        self.last_map = agent.map or ''
        self.last_party: Optional[frozenset] = None
        self.targets: 'collections.OrderedDict[str, str]' = collections.OrderedDict()

    def _log(self, event_type: str, message: str, details=None):
        return self.aggregator.log_event(event_type, self.agent.id, message, details)

    def on_action(self, data: Mapping[str, Any]):
        """Remember the type of whatever we attack before the hit removes it."""
        target = data.get('target')
        if data.get('attacker') != self.agent.id or not target:
            return
        monster = self.entity_types(target)
        if not monster:
            return
        self.targets[target] = monster
        self.targets.move_to_end(target)
        while len(self.targets) > ENTITY_TYPE_CACHE_SIZE:
            self.targets.popitem(last=False)

    def on_hit(self, data: Mapping[str, Any]):
        if not data.get('kill') or data.get('hid') != self.agent.id:
            return
        monster = self.targets.pop(data.get('id'), None) or 'monster'
        return self._log('kill', f"Killed {monster}", KillDetails(monster=monster, damage=data.get('damage')))

    def on_death(self, data: Mapping[str, Any]):
        if data.get('id') == self.agent.id:
            return self._log('death', "Died", DeathDetails())

    def on_party_update(self, data: Mapping[str, Any]):
        """Log joins and leaves, only from the party leader so the fleet reports each change once."""
        members = list((data or {}).get('list') or [])
        if not members or members[0] != self.agent.id:
            return None

        current = frozenset(members)
        previous, self.last_party = self.last_party, current
        if previous is None or previous == current:
            return None

        joined = [m for m in members if m not in previous]
        left = sorted(previous - current)
        if joined:
            return self._log('party', f"{', '.join(joined)} joined party", {'joined': joined, 'members': members})
        if left:
            return self._log('party', f"{', '.join(left)} left party", {'left': left, 'members': members})
        return None

    def on_game_response(self, data: Mapping[str, Any]):
        response = data.get('response')
        if response in UPGRADE_RESPONSES:
            action, success = UPGRADE_RESPONSES[response]
            outcome = "Success" if success else "Failed"
            return self._log('upgrade', f"{action} {outcome}", {'success': success})
        if response == 'buy_success' and data.get('name'):
            return self._log('buy', f"Bought {data['name']}", {'item': data['name']})
        return None

    def on_player(self, data: Mapping[str, Any]):
        """Detect level-ups, server hops and instance entries from a player update."""
        self._check_level(data.get('level'))
        self._check_server()
        self._check_instance(data.get('map'), data.get('in'))

    def _check_level(self, level: Optional[int]):
        if not level:
            return
        previous = self.last_level
        self.last_level = level
        if previous <= 0 or level <= previous:
            return
        now = self.clock()
        if now - self.last_levelup_time <= LEVELUP_COOLDOWN_MS:
            log.debug(f"[{self.agent.id}] Suppressed duplicate level-up to {level}")
            return
        self.last_levelup_time = now
        self._log('levelup', f"Reached level {level}!", LevelUpDetails(level=level, from_level=previous))

    def _check_server(self):
        current = self.agent.server or ''
        if current and self.last_server and current != self.last_server:
            self._log('server', f"Hopped to {current}", ServerDetails(from_server=self.last_server, to_server=current))
        if current:
            self.last_server = current

    def _check_instance(self, map_name: Optional[str], instance: Optional[str]):
        if not map_name or map_name == self.last_map:
            return
        if instance and instance != map_name:
            self._log('instance', f"Entered {map_name} instance", InstanceDetails(map=map_name, instance=instance))
        self.last_map = map_name

    def callbacks(self) -> Dict[str, Callable[[Mapping[str, Any]], Any]]:
        """Socket event name to handler, for the game client to register and later remove."""
        return {
            'action': self.on_action,
            'hit': self.on_hit,
            'death': self.on_death,
            'party_update': self.on_party_update,
            'game_response': self.on_game_response,
            'player': self.on_player,
        }
