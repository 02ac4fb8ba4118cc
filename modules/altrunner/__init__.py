"""Alt connection supervisor and world inference."""

from .errors import AltNotFoundError, AltRunnerError, EmptyCommandError
from .events import AltStatusChanged, DeviceCodeIssued, EventBus, WorldChanged
from .login import LoginOutcome
from .runner import AltRunner
from .scoreboard import Scoreboard, ScoreboardLine, WorldDenyList, guess_world, interpret

__all__ = [
    "AltNotFoundError",
    "AltRunner",
    "AltRunnerError",
    "AltStatusChanged",
    "DeviceCodeIssued",
    "EmptyCommandError",
    "EventBus",
    "LoginOutcome",
    "Scoreboard",
    "ScoreboardLine",
    "WorldChanged",
    "WorldDenyList",
    "guess_world",
    "interpret",
]
