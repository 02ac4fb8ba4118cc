"""Per-alt in-memory connection state and the registry that owns it."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterator, List, Optional

from modules.common.runtime import TimerHandle

from .client import GameClient
from .scoreboard import Scoreboard

STATUS_OFFLINE = "offline"
STATUS_AUTH_WAIT = "auth-wait"
STATUS_ONLINE = "online"
STATUS_ERROR = "error"


@dataclass
class AltState:
    """Everything the runner tracks about one alt between restarts.

    Never persisted. The ``client`` handle is exclusively owned: it is torn
    down before any replacement is created.
    """

    alt_id: int
    guild_id: Optional[int] = None
    label: Optional[str] = None

    client: Optional[GameClient] = None
    reconnect_timer: Optional[TimerHandle] = None
    backoff: float = 0.0

    awaiting_device: bool = False
    device_expires_at: float = 0.0
    device_timer: Optional[TimerHandle] = None
    device_notice_id: Optional[int] = None

    commands: Deque[str] = field(default_factory=deque)
    last_chat_at: float = 0.0
    sending: bool = False
    # Bumped when queued commands are discarded; drain loops of older
    # generations must not put their in-flight command back.
    generation: int = 0

    world: Optional[str] = None
    world_updated_at: int = 0
    last_known_world: Optional[str] = None
    last_known_at: int = 0
    first_world_eligible_at: Optional[float] = None
    returned_to_base: bool = False
    announced_world: bool = False

    armed: bool = False
    sidebar: Optional[Scoreboard] = None
    last_lines: Optional[List[str]] = None
    last_guess: Optional[str] = None
    poll_timer: Optional[TimerHandle] = None
    timers: List[TimerHandle] = field(default_factory=list)
    listeners: List[Callable[[], None]] = field(default_factory=list)

    cooldown_until: float = 0.0

    @property
    def online(self) -> bool:
        return self.client is not None and bool(self.client.is_spawned)

    def track(self, handle: TimerHandle) -> TimerHandle:
        self.timers = [timer for timer in self.timers if timer.active()]
        self.timers.append(handle)
        return handle

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers.clear()
        if self.poll_timer is not None:
            self.poll_timer.cancel()
            self.poll_timer = None

    def detach_listeners(self) -> None:
        listeners, self.listeners = self.listeners, []
        for unsubscribe in listeners:
            try:
                unsubscribe()
            except Exception:  # pragma: no cover - client-side cleanup noise
                pass

    def reset_connection(self) -> None:
        """Forget everything tied to the previous connection."""

        self.cancel_timers()
        self.detach_listeners()
        self.sidebar = None
        self.last_lines = None
        self.last_guess = None
        self.armed = False
        self.announced_world = False
        self.world = None
        self.world_updated_at = 0
        self.first_world_eligible_at = None
        self.returned_to_base = False


class AltRegistry:
    """Lazily created per-alt states owned by a single runner."""

    def __init__(self, *, initial_backoff: float = 0.0) -> None:
        self._states: Dict[int, AltState] = {}
        self._initial_backoff = initial_backoff

    def get(self, alt_id: int) -> AltState:
        state = self._states.get(alt_id)
        if state is None:
            state = AltState(alt_id=alt_id, backoff=self._initial_backoff)
            self._states[alt_id] = state
        return state

    def peek(self, alt_id: int) -> Optional[AltState]:
        return self._states.get(alt_id)

    def discard(self, alt_id: int) -> Optional[AltState]:
        return self._states.pop(alt_id, None)

    def __iter__(self) -> Iterator[AltState]:
        return iter(list(self._states.values()))

    def __len__(self) -> int:
        return len(self._states)
