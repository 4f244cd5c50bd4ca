"""Game-mode contract shared by every mode that drives the arena."""

from __future__ import annotations

from dataclasses import dataclass

from mallow_rl.arena import Arena, Combatant


@dataclass(frozen=True)
class ScoreData:
    name: str
    team: str
    score: int
    status: str


class GameMode:
    """Hooks the arena calls into; subclasses own their own round logic."""

    def __init__(self, arena: Arena) -> None:
        self.arena = arena

    def init(self) -> None:
        raise NotImplementedError

    def update(self, dt: float) -> None:
        raise NotImplementedError

    def on_entity_death(self, victim: Combatant, killer: Combatant | None = None) -> None:
        pass

    def register_entity(self, entity: Combatant) -> None:
        pass

    def get_scoreboard_data(self) -> list[ScoreData]:
        raise NotImplementedError
