import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

EVENT_TYPES = frozenset({
    'kill', 'death', 'loot', 'levelup', 'party', 'banking', 'upgrade', 'trade',
    'sell', 'buy', 'item_transfer', 'gold_transfer', 'server', 'instance', 'error',
})

METRIC_GOLD = 'gold'
METRIC_XP = 'xp'


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds, the unit used for every stored timestamp."""
    return int(time.time() * 1000)


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


# --- Event details: a closed union for the shapes we know ---

@dataclass(frozen=True)
class KillDetails:
    monster: str = 'monster'
    damage: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({'monster': self.monster, 'damage': self.damage})

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'KillDetails':
        return cls(monster=raw.get('monster', 'monster'), damage=raw.get('damage'))


@dataclass(frozen=True)
class DeathDetails:
    cause: Optional[str] = None
    map: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    source_time: Optional[int] = None  # Set on deaths backfilled from the secondary death log

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({'cause': self.cause, 'map': self.map, 'x': self.x, 'y': self.y,
                           'sourceTime': self.source_time})

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'DeathDetails':
        return cls(cause=raw.get('cause'), map=raw.get('map'), x=raw.get('x'), y=raw.get('y'),
                   source_time=raw.get('sourceTime'))


@dataclass(frozen=True)
class LevelUpDetails:
    level: int
    from_level: int

    def to_dict(self) -> Dict[str, Any]:
        return {'level': self.level, 'from': self.from_level}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'LevelUpDetails':
        return cls(level=int(raw.get('level', 0)), from_level=int(raw.get('from', 0)))


@dataclass(frozen=True)
class ServerDetails:
    from_server: str
    to_server: str

    def to_dict(self) -> Dict[str, Any]:
        return {'from': self.from_server, 'to': self.to_server}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'ServerDetails':
        return cls(from_server=raw.get('from', ''), to_server=raw.get('to', ''))


@dataclass(frozen=True)
class InstanceDetails:
    map: str
    instance: str

    def to_dict(self) -> Dict[str, Any]:
        return {'map': self.map, 'instance': self.instance}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'InstanceDetails':
        return cls(map=raw.get('map', ''), instance=raw.get('instance', ''))


EventDetails = Union[KillDetails, DeathDetails, LevelUpDetails, ServerDetails, InstanceDetails,
                     Dict[str, Any]]

DETAIL_TYPES = {
    'kill': KillDetails,
    'death': DeathDetails,
    'levelup': LevelUpDetails,
    'server': ServerDetails,
    'instance': InstanceDetails,
}


def details_to_dict(details: Optional[EventDetails]) -> Dict[str, Any]:
    if details is None:
        return {}
    if isinstance(details, dict):
        return dict(details)
    return details.to_dict()


def details_from_dict(event_type: str, raw: Optional[Dict[str, Any]]) -> EventDetails:
    """Parses stored details back into the typed shape for `event_type`, or a plain dict."""
    raw = raw or {}
    detail_cls = DETAIL_TYPES.get(event_type)
    if detail_cls is None:
        return dict(raw)
    return detail_cls.from_dict(raw)


@dataclass(frozen=True)
class Event:
    timestamp: int
    type: str
    character: str
    message: str
    details: EventDetails = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type!r}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'type': self.type,
            'character': self.character,
            'message': self.message,
            'details': details_to_dict(self.details),
        }


@dataclass(frozen=True)
class CorrelatedEvent:
    type: str
    message: str
    character: str

    def to_payload(self) -> Dict[str, str]:
        return {'type': self.type, 'message': self.message, 'character': self.character}


@dataclass(frozen=True)
class Sample:
    timestamp: int
    value: int


@dataclass
class HistoryRow:
    """A persisted non-zero change of a tracked metric."""
    metric: str
    timestamp: int
    value: int
    delta: int
    bank_gold: Optional[int] = None
    events: List[CorrelatedEvent] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        events = [e.to_payload() for e in self.events]
        if self.metric == METRIC_GOLD:
            return {'timestamp': self.timestamp, 'totalGold': self.value,
                    'bankGold': self.bank_gold or 0, 'delta': self.delta, 'events': events}
        return {'timestamp': self.timestamp, 'totalXp': self.value, 'delta': self.delta,
                'events': events}


@dataclass
class PersistentCounters:
    kills: int = 0
    deaths: int = 0
    items_looted: int = 0
    last_updated: int = 0


@dataclass(frozen=True)
class DashboardStats:
    total_gold: int = 0
    bank_gold: int = 0
    gold_gained_per_hour: int = 0
    gold_spent_per_hour: int = 0
    xp_per_hour: int = 0
    kills: int = 0
    deaths: int = 0
    items: int = 0
    uptime: int = 0

    def to_payload(self) -> Dict[str, int]:
        return {
            'totalGold': self.total_gold,
            'bankGold': self.bank_gold,
            'goldGainedPerHour': self.gold_gained_per_hour,
            'goldSpentPerHour': self.gold_spent_per_hour,
            'xpPerHour': self.xp_per_hour,
            'kills': self.kills,
            'deaths': self.deaths,
            'items': self.items,
            'uptime': self.uptime,
        }
