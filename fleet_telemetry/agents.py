from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass
class AgentState:
    """
    Live state of one bot character, kept current in place by the game-protocol client.
    Only read by the telemetry core.
    """
    id: str
    owner: str = ''
    ctype: str = 'unknown'
    level: int = 1
    hp: int = 0
    max_hp: int = 1
    mp: int = 0
    max_mp: int = 1
    xp: int = 0
    gold: int = 0
    map: str = 'unknown'
    x: float = 0.0
    y: float = 0.0
    target: Optional[str] = None
    ping: Optional[float] = None
    server: Optional[str] = None  # region + identifier, e.g. "USIII"
    skin: Optional[str] = None
    moving: bool = False
    cx: Optional[Dict[str, str]] = None  # cosmetic slots
    slots: Optional[Dict[str, Any]] = None  # equipment
    stats: Optional[Dict[str, Any]] = None  # combat stats
    bank_gold: Optional[int] = None  # last bank reading cached by the client, may be stale


def cumulative_xp(agent: AgentState, levels: Optional[Mapping[int, int]]) -> int:
    """XP needed for levels 1..level plus progress into the current level."""
    if not levels:
        return agent.xp or 0
    level = agent.level or 1
    return sum(levels.get(i, 0) for i in range(1, level + 1)) + (agent.xp or 0)


def max_xp(agent: AgentState, levels: Optional[Mapping[int, int]]) -> int:
    if not levels:
        return 100
    level = agent.level or 1
    return levels.get(level + 1) or levels.get(level) or 100


def character_payload(agent: AgentState, levels: Optional[Mapping[int, int]] = None) -> Dict[str, Any]:
    payload = {
        'id': agent.id,
        'name': agent.id,
        'type': agent.ctype,
        'level': agent.level,
        'hp': agent.hp,
        'maxHp': agent.max_hp,
        'mp': agent.mp,
        'maxMp': agent.max_mp,
        'xp': agent.xp,
        'maxXp': max_xp(agent, levels),
        'gold': agent.gold,
        'map': agent.map,
        'x': round(agent.x or 0),
        'y': round(agent.y or 0),
        'moving': bool(agent.moving),
    }
    optional = {'target': agent.target, 'ping': agent.ping, 'server': agent.server, 'skin': agent.skin,
                'cx': agent.cx, 'slots': agent.slots, 'stats': agent.stats}
    payload.update({k: v for k, v in optional.items() if v is not None})
    return payload
