"""Scene descriptor and preset entry models.

A SceneDescriptor is the snapshot of game state music is chosen for. It is
pushed in by whatever inspects the live world; nothing here reads the world.
PresetEntry is the library record pairing a descriptor with its audio.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

PRESET_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Environment(str, Enum):
    GRASSLANDS = "Grasslands"
    FOREST = "Forest"
    DARK_DUNGEON = "DarkDungeon"
    URBAN = "Urban"
    OCEAN = "Ocean"
    MOUNTAIN = "Mountain"
    DESERT = "Desert"
    SNOW = "Snow"


class TimeOfDay(str, Enum):
    DAY = "Day"
    NIGHT = "Night"
    DAWN = "Dawn"
    DUSK = "Dusk"


class Weather(str, Enum):
    CLEAR = "Clear"
    RAIN = "Rain"
    SNOW = "Snow"
    STORM = "Storm"
    FOG = "Fog"


class Action(str, Enum):
    WALKING = "Walking"
    RUNNING = "Running"
    COMBAT = "Combat"
    STEALTH = "Stealth"
    FLYING = "Flying"
    SWIMMING = "Swimming"


class EnemyPresence(str, Enum):
    NONE = "None"
    FEW = "Few"
    MANY = "Many"
    BOSS = "Boss"
    LURKING = "Lurking"


class GameLevel(str, Enum):
    TUTORIAL = "Tutorial"
    EARLY = "Early"
    MID = "Mid"
    LATE = "Late"
    FINAL_BOSS = "FinalBoss"


ENVIRONMENT_PHRASES = {
    Environment.GRASSLANDS: "peaceful grasslands",
    Environment.FOREST: "mysterious forest",
    Environment.DARK_DUNGEON: "dark dungeon",
    Environment.URBAN: "urban city",
    Environment.OCEAN: "ocean beach",
    Environment.MOUNTAIN: "mountain peaks",
    Environment.DESERT: "hot desert",
    Environment.SNOW: "frozen snow",
}

ACTION_PHRASES = {
    Action.WALKING: "exploration",
    Action.RUNNING: "fast-paced",
    Action.COMBAT: "intense combat",
    Action.STEALTH: "stealth",
    Action.FLYING: "aerial",
    Action.SWIMMING: "underwater",
}

TIME_PHRASES = {
    TimeOfDay.DAY: "daytime",
    TimeOfDay.NIGHT: "nighttime",
    TimeOfDay.DAWN: "dawn",
    TimeOfDay.DUSK: "dusk",
}


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class SceneDescriptor(BaseModel):
    """Immutable snapshot of the game state relevant to music selection."""

    model_config = ConfigDict(frozen=True)

    scene_name: str = "Default Scene"
    environment: Environment = Environment.GRASSLANDS
    time_of_day: TimeOfDay = TimeOfDay.DAY
    weather: Weather = Weather.CLEAR
    current_action: Action = Action.WALKING
    action_intensity: float = Field(default=0.5, ge=0.0, le=1.0)
    is_stealth: bool = False
    enemy_presence: EnemyPresence = EnemyPresence.NONE
    enemy_count: int = Field(default=0, ge=0)
    threat_level: float = Field(default=0.0, ge=0.0, le=1.0)
    game_level: GameLevel = GameLevel.TUTORIAL
    player_health: float = Field(default=1.0, ge=0.0, le=1.0)
    is_boss_fight: bool = False

    def intensity(self) -> float:
        """Overall scene intensity in [0, 1].

        Weights: action 0.3, threat 0.4, enemy count (saturating at 10) 0.2,
        boss fight 0.3, missing health 0.1. The raw sum can exceed 1 and is
        clamped.
        """
        value = self.action_intensity * 0.3
        value += self.threat_level * 0.4
        value += clamp01(self.enemy_count / 10) * 0.2
        if self.is_boss_fight:
            value += 0.3
        value += (1.0 - self.player_health) * 0.1
        return clamp01(value)

    def threat_phrase(self) -> str:
        if self.threat_level > 0.7:
            return "high tension"
        if self.threat_level > 0.3:
            return "moderate tension"
        return "relaxed"

    def describe(self) -> str:
        """Music-style prompt text sent to the synthesis service."""
        parts = [
            ENVIRONMENT_PHRASES[self.environment],
            ACTION_PHRASES[self.current_action],
            self.threat_phrase(),
            TIME_PHRASES[self.time_of_day],
        ]
        return " ".join(p for p in parts if p)

    def scene_key(self) -> str:
        return (
            f"{self.environment.value}_{self.current_action.value}_"
            f"{self.enemy_presence.value}_{self.game_level.value}_{self.time_of_day.value}"
        )

    def threat_bucket(self) -> int:
        return int(round(self.threat_level * 10))

    def bucket_key(self) -> str:
        """Discretized key: near-identical scenes share one preset."""
        return f"{self.scene_key()}_{self.threat_bucket()}"

    def preset_id(self) -> str:
        return f"preset_{self.bucket_key()}"

    def preset_name(self) -> str:
        return (
            f"{self.environment.value} - {self.current_action.value} - "
            f"{self.enemy_presence.value}"
        )

    def category(self) -> tuple[Environment, Action, EnemyPresence]:
        return (self.environment, self.current_action, self.enemy_presence)


class PresetEntry(BaseModel):
    """A library record: descriptor + audio reference + metadata.

    ``artifact`` is the in-memory audio and is never serialized; after a
    load only ``audio_file_name`` is known until the library resolves it.
    """

    id: str
    name: str
    scene: SceneDescriptor
    artifact: bytes | None = Field(default=None, exclude=True, repr=False)
    audio_file_name: str | None = None
    intensity: float
    description: str = ""
    generated: bool = False
    created_at: str = Field(default_factory=lambda: datetime.now().strftime(PRESET_DATE_FORMAT))

    @classmethod
    def from_scene(
        cls,
        scene: SceneDescriptor,
        *,
        entry_id: str | None = None,
        name: str | None = None,
        artifact: bytes | None = None,
        audio_file_name: str | None = None,
        generated: bool = True,
    ) -> "PresetEntry":
        return cls(
            id=entry_id or scene.preset_id(),
            name=name or scene.preset_name(),
            scene=scene,
            artifact=artifact,
            audio_file_name=audio_file_name,
            intensity=scene.intensity(),
            description=scene.describe(),
            generated=generated,
        )

    @property
    def has_audio(self) -> bool:
        """True when the artifact is loaded or can be loaded lazily."""
        return self.artifact is not None or bool(self.audio_file_name)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "intensity": round(self.intensity, 3),
            "audio_file_name": self.audio_file_name,
            "generated": self.generated,
            "loaded": self.artifact is not None,
        }
