"""Music preset library.

Matches a live scene against stored presets and commits newly generated
audio as presets. Entries are (descriptor, audio) pairs persisted as one JSON
index plus one audio file each; audio is only read from disk when a caller
resolves an entry.

Selection flow:
  1. score every entry with audio (loaded or on disk) against the scene
  2. best score >= threshold -> that entry
  3. otherwise the entry whose stored intensity is closest to the scene's
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from scenescore.config import SIMILARITY_THRESHOLD
from scenescore.exceptions import PersistenceWarning
from scenescore.models import (
    Action,
    EnemyPresence,
    Environment,
    PresetEntry,
    SceneDescriptor,
    TimeOfDay,
)
from scenescore.services import similarity
from scenescore.services.events import Event, Notifier

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "music_presets.json"
AUDIO_EXTENSIONS = (".mp3", ".wav", ".ogg")
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def make_safe_file_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def guess_extension(artifact: bytes) -> str:
    if artifact[:4] == b"RIFF":
        return ".wav"
    if artifact[:4] == b"OggS":
        return ".ogg"
    return ".mp3"


class PresetStore:
    """Durable store: ``<root>/music_presets.json`` and ``<root>/audio/``.

    ``bundled_audio_dir`` is an optional read-only directory shipped with the
    game; it is searched before the writable audio directory.
    """

    def __init__(self, root: Path | str, bundled_audio_dir: Path | str | None = None):
        self.root = Path(root)
        self.bundled_audio_dir = Path(bundled_audio_dir) if bundled_audio_dir else None

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE_NAME

    @property
    def audio_dir(self) -> Path:
        return self.root / "audio"

    def read_index(self) -> list[dict]:
        if not self.index_path.exists():
            return []
        data = json.loads(self.index_path.read_text(encoding="utf-8"))
        return list(data.get("presets", []))

    def write_index(self, records: list[dict]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"presets": records}, indent=2, ensure_ascii=False)
        self.index_path.write_text(payload, encoding="utf-8")

    def write_audio(self, artifact: bytes, file_stem: str) -> str:
        """Write artifact bytes, returning the stored file name."""
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_name = f"{make_safe_file_name(file_stem)}_{stamp}{guess_extension(artifact)}"
        (self.audio_dir / file_name).write_bytes(artifact)
        return file_name

    def import_audio(self, source: Path) -> str:
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, self.audio_dir / source.name)
        return source.name

    def find_audio(self, file_name: str) -> Path | None:
        for folder in (self.bundled_audio_dir, self.audio_dir):
            if folder is None:
                continue
            candidate = folder / file_name
            if candidate.is_file():
                return candidate
        return None

    def read_audio(self, file_name: str) -> bytes | None:
        path = self.find_audio(file_name)
        if path is None:
            return None
        return path.read_bytes()


# Keyword -> field value, checked in order; first hit wins per field.
_FILE_NAME_HINTS: list[tuple[str, list[tuple[str, object]]]] = [
    ("environment", [
        ("forest", Environment.FOREST),
        ("dungeon", Environment.DARK_DUNGEON),
        ("urban", Environment.URBAN),
        ("ocean", Environment.OCEAN),
        ("mountain", Environment.MOUNTAIN),
        ("desert", Environment.DESERT),
        ("snow", Environment.SNOW),
    ]),
    ("current_action", [
        ("combat", Action.COMBAT),
        ("stealth", Action.STEALTH),
        ("run", Action.RUNNING),
        ("fly", Action.FLYING),
        ("swim", Action.SWIMMING),
    ]),
    ("enemy_presence", [
        ("boss", EnemyPresence.BOSS),
        ("many", EnemyPresence.MANY),
        ("few", EnemyPresence.FEW),
        ("lurk", EnemyPresence.LURKING),
    ]),
    ("time_of_day", [
        ("night", TimeOfDay.NIGHT),
        ("dawn", TimeOfDay.DAWN),
        ("dusk", TimeOfDay.DUSK),
    ]),
    ("action_intensity", [("intense", 0.9), ("calm", 0.2)]),
    ("threat_level", [("danger", 0.8), ("safe", 0.1)]),
]


def scene_from_file_name(stem: str) -> SceneDescriptor:
    """Guess a scene for an imported audio file from keywords in its name."""
    lowered = stem.lower()
    fields: dict[str, object] = {"scene_name": stem}
    for field_name, hints in _FILE_NAME_HINTS:
        for keyword, value in hints:
            if keyword in lowered:
                fields[field_name] = value
                break
    return SceneDescriptor(**fields)


class PresetLibrary:
    """Holds preset entries and picks the best one for a scene."""

    def __init__(
        self,
        store: PresetStore,
        *,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        notifier: Notifier | None = None,
    ):
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.notifier = notifier or Notifier()
        self._entries: list[PresetEntry] = []
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> list[PresetEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entry_id: str) -> PresetEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def best_match(self, scene: SceneDescriptor) -> tuple[PresetEntry | None, float]:
        """Highest-scoring entry with audio, and its score."""
        best: PresetEntry | None = None
        best_score = 0.0
        for entry in self._entries:
            if not entry.has_audio:
                continue
            entry_score = similarity.score(scene, entry.scene)
            logger.debug("[PRESETS] %s similarity %.2f", entry.name, entry_score)
            if best is None or entry_score > best_score:
                best = entry
                best_score = entry_score
        return best, best_score

    def closest_intensity(self, target: float) -> PresetEntry | None:
        closest: PresetEntry | None = None
        min_difference = float("inf")
        for entry in self._entries:
            if not entry.has_audio:
                continue
            difference = abs(entry.intensity - target)
            if difference < min_difference:
                min_difference = difference
                closest = entry
        return closest

    def select_best(self, scene: SceneDescriptor) -> PresetEntry | None:
        """Best match at or above the threshold, else closest intensity."""
        if not self._entries:
            logger.warning("[PRESETS] No presets available")
            return None

        best, best_score = self.best_match(scene)
        if best is not None and best_score >= self.similarity_threshold:
            logger.info("[PRESETS] Selected %s (similarity %.2f)", best.name, best_score)
            self.notifier.emit(Event.PRESET_SELECTED, entry=best, score=best_score)
            return best

        fallback = self.closest_intensity(scene.intensity())
        if fallback is None:
            return None
        logger.info(
            "[PRESETS] No preset above %.2f (best %.2f); closest intensity: %s",
            self.similarity_threshold,
            best_score,
            fallback.name,
        )
        self.notifier.emit(
            Event.PRESET_SELECTED,
            entry=fallback,
            score=similarity.score(scene, fallback.scene),
        )
        return fallback

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_entry(
        self,
        scene: SceneDescriptor,
        artifact: bytes,
        *,
        file_stem: str | None = None,
    ) -> PresetEntry:
        """Commit generated audio as a preset, or return the existing one.

        Scenes in the same discretized bucket share an id; an existing entry
        is returned unchanged except for filling in missing audio.
        """
        entry_id = scene.preset_id()
        stem = file_stem or entry_id
        async with self._lock:
            existing = self.get(entry_id)
            if existing is not None:
                if existing.artifact is None:
                    existing.artifact = artifact
                if not existing.audio_file_name:
                    file_name = await self._write_audio(artifact, stem)
                    if file_name:
                        existing.audio_file_name = file_name
                        await self._persist()
                logger.info("[PRESETS] Preset already exists: %s", entry_id)
                return existing

            file_name = await self._write_audio(artifact, stem)
            entry = PresetEntry.from_scene(
                scene,
                entry_id=entry_id,
                artifact=artifact,
                audio_file_name=file_name,
            )
            self._entries.append(entry)
            await self._persist()

        logger.info("[PRESETS] Created preset %s (file=%s)", entry.name, entry.audio_file_name)
        self.notifier.emit(Event.PRESET_GENERATED, entry=entry)
        return entry

    async def _write_audio(self, artifact: bytes, stem: str) -> str | None:
        try:
            return await asyncio.to_thread(self.store.write_audio, artifact, stem)
        except OSError as exc:
            warning = PersistenceWarning(f"Could not write audio for {stem}: {exc}")
            logger.warning("[PRESETS] %s", warning.reason)
            return None

    def import_folder(self, folder: Path | str) -> list[PresetEntry]:
        """Import loose audio files as presets.

        Files whose name or derived id is already in the library are skipped.
        """
        folder = Path(folder)
        if not folder.is_dir():
            logger.warning("[PRESETS] Import folder does not exist: %s", folder)
            return []

        files = sorted(
            path for path in folder.iterdir()
            if path.is_file() and path.suffix.lower() in AUDIO_EXTENSIONS
        )
        imported: list[PresetEntry] = []
        for path in files:
            entry_id = f"import_{path.stem}"
            duplicate = any(
                e.id == entry_id or (e.audio_file_name and e.audio_file_name == path.name)
                for e in self._entries
            )
            if duplicate:
                logger.info("[PRESETS] Skipping import, already present: %s", path.name)
                continue
            try:
                file_name = self.store.import_audio(path)
            except OSError as exc:
                logger.warning("[PRESETS] Could not copy %s: %s", path.name, exc)
                continue
            entry = PresetEntry.from_scene(
                scene_from_file_name(path.stem),
                entry_id=entry_id,
                name=path.stem,
                audio_file_name=file_name,
                generated=False,
            )
            self._entries.append(entry)
            imported.append(entry)

        if imported:
            self.save_all()
        logger.info("[PRESETS] Imported %d of %d files from %s", len(imported), len(files), folder)
        return imported

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_all(self) -> int:
        """Replace in-memory entries with the stored index. Audio stays on disk."""
        try:
            records = self.store.read_index()
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[PRESETS] Could not read %s: %s", self.store.index_path, exc)
            return 0

        entries: list[PresetEntry] = []
        for record in records:
            try:
                entries.append(PresetEntry.model_validate(record))
            except ValidationError as exc:
                logger.warning("[PRESETS] Skipping invalid preset record: %s", exc)
        self._entries = entries
        logger.info("[PRESETS] Loaded %d presets", len(entries))
        return len(entries)

    def save_all(self) -> bool:
        """Write the index. Failure is a warning; memory is left untouched."""
        return self._write_index(self._records())

    async def _persist(self) -> bool:
        # Snapshot on the loop, write off it.
        return await asyncio.to_thread(self._write_index, self._records())

    def _records(self) -> list[dict]:
        return [entry.model_dump(mode="json") for entry in self._entries]

    def _write_index(self, records: list[dict]) -> bool:
        try:
            self.store.write_index(records)
        except OSError as exc:
            warning = PersistenceWarning(f"Could not save presets: {exc}")
            logger.warning("[PRESETS] %s", warning.reason)
            return False
        logger.debug("[PRESETS] Saved %d presets to %s", len(records), self.store.index_path)
        return True

    async def resolve_artifact(self, entry: PresetEntry) -> bytes | None:
        """Load an entry's audio from disk if it is not in memory yet."""
        if entry.artifact is not None:
            return entry.artifact
        if not entry.audio_file_name:
            logger.error("[PRESETS] Preset %s has no audio file", entry.id)
            return None
        try:
            data = await asyncio.to_thread(self.store.read_audio, entry.audio_file_name)
        except OSError as exc:
            logger.error("[PRESETS] Could not read %s: %s", entry.audio_file_name, exc)
            return None
        if not data:
            logger.warning("[PRESETS] Audio file not found: %s", entry.audio_file_name)
            return None
        entry.artifact = data
        return data

    def clear_all(self) -> bool:
        self._entries.clear()
        logger.info("[PRESETS] Cleared all presets")
        return self.save_all()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def count_for_category(self, scene: SceneDescriptor) -> int:
        category = scene.category()
        return sum(1 for e in self._entries if e.scene.category() == category)

    def stats(self) -> dict[str, int]:
        return {
            "total": len(self._entries),
            "generated": sum(1 for e in self._entries if e.generated),
            "loaded": sum(1 for e in self._entries if e.artifact is not None),
            "resolvable": sum(1 for e in self._entries if e.has_audio),
        }
