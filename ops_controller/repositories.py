"""
Persistence repositories.

The core needs only create / save / update / get / list per entity type. Two
implementations are provided:

- InMemoryRepository: process-local, copies on every read and write so callers
  never hold a reference into the store (partial in-run state is invisible
  until the owning orchestrator saves it at a phase boundary).
- JsonlRepository: append-only JSONL snapshots with fsync; the newest
  snapshot per id wins on load and a delete is written as a tombstone.
  Repositories.durable() backs every repository with one, so a resumed cycle
  finds its generated files and a resumed investigation its evidence,
  hypotheses and actions.
"""

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from .models import (
    ActionRecord,
    DevelopmentCycle,
    Evidence,
    Evolution,
    FileVersion,
    GeneratedFile,
    Hypothesis,
    Incident,
    MonitoredApp,
    Postmortem,
    TimelineEntry,
    new_id,
    utcnow,
)

logger = logging.getLogger("repositories")

T = TypeVar("T")

TOMBSTONE = "_deleted"


class InMemoryRepository(Generic[T]):
    """Dictionary-backed repository keyed by entity id."""

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    async def create(self, entity: T) -> T:
        with self._lock:
            if entity.id in self._items:
                raise KeyError(f"{self.name}: duplicate id {entity.id}")
            self._items[entity.id] = copy.deepcopy(entity)
        self._persist(entity)
        return entity

    async def save(self, entity: T) -> T:
        """Insert or replace."""
        if hasattr(entity, "updated_at"):
            entity.updated_at = utcnow()
        with self._lock:
            self._items[entity.id] = copy.deepcopy(entity)
        self._persist(entity)
        return entity

    async def update(self, entity_id: str, **changes: Any) -> Optional[T]:
        with self._lock:
            current = self._items.get(entity_id)
            if current is None:
                return None
            for key, value in changes.items():
                if not hasattr(current, key):
                    raise AttributeError(f"{self.name}: unknown field {key}")
                setattr(current, key, value)
            if hasattr(current, "updated_at"):
                current.updated_at = utcnow()
            updated = copy.deepcopy(current)
        self._persist(updated)
        return updated

    async def get(self, entity_id: str) -> Optional[T]:
        with self._lock:
            item = self._items.get(entity_id)
            return copy.deepcopy(item) if item is not None else None

    async def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values()]
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return items

    async def delete(self, entity_id: str) -> bool:
        with self._lock:
            return self._items.pop(entity_id, None) is not None

    def count(self) -> int:
        return len(self._items)

    def _persist(self, entity: T) -> None:
        """Hook for durable subclasses."""


class JsonlRepository(InMemoryRepository[T]):
    """
    Append-only JSONL snapshot log in front of the in-memory map.

    Entity classes must provide to_dict() / from_dict().
    """

    def __init__(self, name: str, path: Path, entity_cls: Type[T]):
        super().__init__(name)
        self._path = Path(path)
        self._entity_cls = entity_cls
        self._file_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        loaded = 0
        with open(self._path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    if data.get(TOMBSTONE):
                        self._items.pop(data["id"], None)
                        continue
                    entity = self._entity_cls.from_dict(data)
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.warning(f"{self.name}: skipping corrupt line {line_no}: {e}")
                    continue
                self._items[entity.id] = entity
                loaded += 1
        logger.info(f"{self.name}: loaded {len(self._items)} entities from {loaded} snapshots")

    async def delete(self, entity_id: str) -> bool:
        deleted = await super().delete(entity_id)
        if deleted:
            self._append({"id": entity_id, TOMBSTONE: True})
        return deleted

    def _persist(self, entity: T) -> None:
        self._append(entity.to_dict())

    def _append(self, record: Dict[str, Any]) -> None:
        with self._file_lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())


# -----------------------------------------------------------------------------
# Specialised Repositories
# -----------------------------------------------------------------------------

class GeneratedFileRepository(InMemoryRepository[GeneratedFile]):

    async def list_for_cycle(self, cycle_id: str) -> List[GeneratedFile]:
        files = await self.list(lambda f: f.development_cycle_id == cycle_id)
        return sorted(files, key=lambda f: f.path)

    async def get_by_path(self, cycle_id: str, path: str) -> Optional[GeneratedFile]:
        matches = await self.list(lambda f: f.development_cycle_id == cycle_id and f.path == path)
        return matches[0] if matches else None

    async def upsert(self, cycle_id: str, path: str, content: str,
                     language: str = "typescript", purpose: str = "") -> GeneratedFile:
        existing = await self.get_by_path(cycle_id, path)
        if existing:
            existing.content = content
            existing.updated_at = utcnow()
            return await self.save(existing)
        return await self.create(GeneratedFile(
            development_cycle_id=cycle_id,
            path=path,
            content=content,
            language=language,
            purpose=purpose,
        ))

    async def remove_path(self, cycle_id: str, path: str) -> bool:
        existing = await self.get_by_path(cycle_id, path)
        if existing is None:
            return False
        return await self.delete(existing.id)


class FileVersionRepository(InMemoryRepository[FileVersion]):

    async def history(self, cycle_id: str, path: str) -> List[FileVersion]:
        versions = await self.list(lambda v: v.development_cycle_id == cycle_id and v.path == path)
        return sorted(versions, key=lambda v: v.version)

    async def record(self, cycle_id: str, path: str, content: Optional[str], change_type: str,
                     evolution_id: Optional[str] = None, reason: str = "") -> FileVersion:
        history = await self.history(cycle_id, path)
        version = FileVersion(
            development_cycle_id=cycle_id,
            path=path,
            version=(history[-1].version + 1) if history else 1,
            content=content,
            change_type=change_type,
            evolution_id=evolution_id,
            reason=reason,
        )
        return await self.create(version)

    async def for_evolution(self, evolution_id: str) -> List[FileVersion]:
        versions = await self.list(lambda v: v.evolution_id == evolution_id)
        return sorted(versions, key=lambda v: (v.path, v.version))


class EvolutionRepository(InMemoryRepository[Evolution]):

    async def list_for_cycle(self, cycle_id: str) -> List[Evolution]:
        evolutions = await self.list(lambda e: e.development_cycle_id == cycle_id)
        return sorted(evolutions, key=lambda e: e.created_at, reverse=True)

    async def find_by_incident(self, incident_id: str) -> List[Evolution]:
        evolutions = await self.list(lambda e: e.triggered_by_incident_id == incident_id)
        return sorted(evolutions, key=lambda e: e.created_at, reverse=True)


class IncidentChildRepository(InMemoryRepository[T]):
    """Evidence, hypotheses, actions: always listed per incident."""

    async def list_for_incident(self, incident_id: str) -> List[T]:
        return await self.list(lambda x: x.incident_id == incident_id)


class TimelineRepository(InMemoryRepository[TimelineEntry]):

    async def append(self, entity_id: str, kind: str, title: str,
                     description: str = "", data: Optional[Dict[str, Any]] = None) -> TimelineEntry:
        entry = TimelineEntry(
            entity_id=entity_id,
            kind=kind,
            title=title,
            description=description,
            data=data or {},
        )
        return await self.create(entry)

    async def for_entity(self, entity_id: str) -> List[TimelineEntry]:
        entries = await self.list(lambda e: e.entity_id == entity_id)
        return sorted(entries, key=lambda e: e.created_at)


@dataclass
class LearnedPattern:
    """Resolution learned from a resolved incident."""
    name: str
    trigger_keywords: List[str]
    resolution_action: str
    occurrences: int = 1
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger_keywords": list(self.trigger_keywords),
            "resolution_action": self.resolution_action,
            "occurrences": self.occurrences,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedPattern":
        return cls(
            name=data["name"],
            trigger_keywords=list(data["trigger_keywords"]),
            resolution_action=data["resolution_action"],
            occurrences=data.get("occurrences", 1),
            id=data["id"],
        )


class PatternRepository(InMemoryRepository[LearnedPattern]):

    async def find_matching(self, text: str) -> List[LearnedPattern]:
        lowered = text.lower()
        return await self.list(lambda p: any(k in lowered for k in p.trigger_keywords))


class MonitoredAppRepository(InMemoryRepository[MonitoredApp]):

    async def list_active(self) -> List[MonitoredApp]:
        return await self.list(lambda a: a.is_active)

    async def get_by_name(self, name: str, namespace: Optional[str] = None) -> Optional[MonitoredApp]:
        matches = await self.list(
            lambda a: a.name == name and (namespace is None or a.namespace == namespace)
        )
        return matches[0] if matches else None


# -----------------------------------------------------------------------------
# Durable Variants
# -----------------------------------------------------------------------------

class JsonlGeneratedFileRepository(JsonlRepository, GeneratedFileRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, GeneratedFile)


class JsonlFileVersionRepository(JsonlRepository, FileVersionRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, FileVersion)


class JsonlEvolutionRepository(JsonlRepository, EvolutionRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, Evolution)


class JsonlIncidentChildRepository(JsonlRepository, IncidentChildRepository):
    pass


class JsonlTimelineRepository(JsonlRepository, TimelineRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, TimelineEntry)


class JsonlPatternRepository(JsonlRepository, PatternRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, LearnedPattern)


class JsonlMonitoredAppRepository(JsonlRepository, MonitoredAppRepository):

    def __init__(self, name: str, path: Path):
        super().__init__(name, path, MonitoredApp)


# -----------------------------------------------------------------------------
# Bundle
# -----------------------------------------------------------------------------

@dataclass
class Repositories:
    """Every repository the core uses, passed around as one object."""
    incidents: InMemoryRepository = field(default_factory=lambda: InMemoryRepository("incidents"))
    evidence: IncidentChildRepository = field(default_factory=lambda: IncidentChildRepository("evidence"))
    hypotheses: IncidentChildRepository = field(default_factory=lambda: IncidentChildRepository("hypotheses"))
    actions: IncidentChildRepository = field(default_factory=lambda: IncidentChildRepository("actions"))
    timeline: TimelineRepository = field(default_factory=lambda: TimelineRepository("timeline"))
    postmortems: InMemoryRepository = field(default_factory=lambda: InMemoryRepository("postmortems"))
    cycles: InMemoryRepository = field(default_factory=lambda: InMemoryRepository("development_cycles"))
    generated_files: GeneratedFileRepository = field(default_factory=lambda: GeneratedFileRepository("generated_files"))
    file_versions: FileVersionRepository = field(default_factory=lambda: FileVersionRepository("file_versions"))
    evolutions: EvolutionRepository = field(default_factory=lambda: EvolutionRepository("evolutions"))
    patterns: PatternRepository = field(default_factory=lambda: PatternRepository("learned_patterns"))
    monitored_apps: MonitoredAppRepository = field(default_factory=lambda: MonitoredAppRepository("monitored_apps"))

    @classmethod
    def durable(cls, state_dir: Path) -> "Repositories":
        """Every repository backed by a JSONL file under state_dir."""
        state_dir = Path(state_dir)
        return cls(
            incidents=JsonlRepository("incidents", state_dir / "incidents.jsonl", Incident),
            evidence=JsonlIncidentChildRepository("evidence", state_dir / "evidence.jsonl", Evidence),
            hypotheses=JsonlIncidentChildRepository("hypotheses", state_dir / "hypotheses.jsonl", Hypothesis),
            actions=JsonlIncidentChildRepository("actions", state_dir / "actions.jsonl", ActionRecord),
            timeline=JsonlTimelineRepository("timeline", state_dir / "timeline.jsonl"),
            postmortems=JsonlRepository("postmortems", state_dir / "postmortems.jsonl", Postmortem),
            cycles=JsonlRepository("development_cycles", state_dir / "cycles.jsonl", DevelopmentCycle),
            generated_files=JsonlGeneratedFileRepository("generated_files", state_dir / "generated_files.jsonl"),
            file_versions=JsonlFileVersionRepository("file_versions", state_dir / "file_versions.jsonl"),
            evolutions=JsonlEvolutionRepository("evolutions", state_dir / "evolutions.jsonl"),
            patterns=JsonlPatternRepository("learned_patterns", state_dir / "learned_patterns.jsonl"),
            monitored_apps=JsonlMonitoredAppRepository("monitored_apps", state_dir / "monitored_apps.jsonl"),
        )
