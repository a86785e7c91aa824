"""Declarative register map: address specs to MQTT topics.

A register map is a YAML (or JSON) document with a top-level `mappings` list::

    mappings:
      - register: "1"
        datatype: uint16
        scale: 0.1
        topic: sensors/op1/temperature
      - register: "40010-40013"
        datatype: int16
        topic: "zones/{offset}/setpoint"
      - register: "40100:2"
        datatype: float32
        length: 2
        topic: "meter/{register}"
        transform: "round(value, 2)"

Address spec grammar:
    "N"        single address N
    "A-B"      inclusive range (empty when B < A)
    "A:C"      C consecutive addresses from A (empty when C <= 0)
    "coil:N"   coil N, kept apart from holding register N
    other      opaque symbolic key, never matched by numeric lookups

Every load builds a complete new generation of expanded entries and swaps it
in with a single assignment, so readers always see one whole generation.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml

from mbsniff.utils.values import default_word_length

logger = logging.getLogger(__name__)

Address = Union[int, str]
RegisterKey = Tuple[str, Any]

DEFAULT_DEBOUNCE = 0.2
DEFAULT_POLL_INTERVAL = 0.1

REQUIRED_FIELDS = ("register", "datatype", "topic")


class RegisterMapError(Exception):
    """The register map document cannot be read or has the wrong shape."""
    pass


@dataclass(slots=True)
class MappingSpec:
    """One element of the `mappings` list, as written in the document."""

    register: str
    datatype: str
    topic: str
    length: Optional[int] = None
    scale: Optional[float] = None
    unit: Optional[str] = None
    transform: Optional[str] = None
    retain: Optional[bool] = None
    qos: Optional[int] = None
    unique_id: Optional[str] = None
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MappingSpec":
        known = {f.name for f in fields(cls)} - {"extra"}
        qos = data.get("qos")
        length = data.get("length")
        scale = data.get("scale")
        return cls(
            register=str(data["register"]).strip(),
            datatype=str(data["datatype"]).strip().lower(),
            topic=str(data["topic"]),
            length=int(length) if length is not None else None,
            scale=float(scale) if scale is not None else None,
            unit=data.get("unit"),
            transform=data.get("transform"),
            retain=bool(data["retain"]) if data.get("retain") is not None else None,
            qos=int(qos) if qos is not None else None,
            unique_id=data.get("unique_id"),
            description=data.get("description"),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass(frozen=True)
class MappingEntry:
    """A concrete register binding produced by expanding a MappingSpec."""

    spec: MappingSpec
    address: Address
    offset: int
    topic: str

    @property
    def key(self) -> RegisterKey:
        return register_key(self.address)

    @property
    def datatype(self) -> str:
        return self.spec.datatype

    @property
    def length(self) -> int:
        return self.spec.length or default_word_length(self.spec.datatype)

    @property
    def scale(self) -> float:
        return 1 if self.spec.scale is None else self.spec.scale

    @property
    def transform(self) -> Optional[str]:
        return self.spec.transform

    @property
    def unit(self) -> Optional[str]:
        return self.spec.unit

    @property
    def retain(self) -> bool:
        return bool(self.spec.retain)

    @property
    def qos(self) -> int:
        return self.spec.qos or 0

    @property
    def unique_id(self) -> Optional[str]:
        return self.spec.unique_id

    @property
    def description(self) -> Optional[str]:
        return self.spec.description


@dataclass(frozen=True)
class ValidationIssue:
    index: Optional[int]
    field: Optional[str]
    message: str

    def __str__(self) -> str:
        if self.index is None:
            return self.message
        return f"mappings[{self.index}]: {self.message}"


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [str(issue) for issue in self.issues]


class RegisterMapSnapshot:
    """Immutable generation of expanded entries keyed by register key."""

    def __init__(self, entries: Mapping[RegisterKey, MappingEntry], generation: int = 0, source: Optional[str] = None):
        self._entries = MappingProxyType(dict(entries))
        self.generation = generation
        self.source = source

    def lookup(self, address: Address) -> Optional[MappingEntry]:
        return self._entries.get(register_key(address))

    def addresses(self) -> List[Address]:
        return [entry.address for entry in self._entries.values()]

    def entries(self) -> List[MappingEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[MappingEntry]:
        return iter(self._entries.values())


EMPTY_SNAPSHOT = RegisterMapSnapshot({})


def _parse_number(text: str) -> Optional[int]:
    """Parse a decimal or 0x-prefixed integer; None if it is neither."""
    text = text.strip()
    if not text:
        return None
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text, 10)
    except ValueError:
        return None


def register_key(address: Address) -> RegisterKey:
    """Canonical lookup key; numeric, coil and symbolic keys never collide."""
    if isinstance(address, int) and not isinstance(address, bool):
        return ("reg", address)
    text = str(address).strip()
    if text.startswith("coil:"):
        n = _parse_number(text[5:])
        if n is not None:
            return ("coil", n)
    return ("sym", text)


def parse_register_spec(spec: str) -> List[Tuple[Address, int]]:
    """Expand an address spec into (address, offset) pairs."""
    spec = str(spec).strip()

    if spec.startswith("coil:"):
        n = _parse_number(spec[5:])
        if n is None:
            return [(spec, 0)]
        return [(f"coil:{n}", 0)]

    # non-numeric parts ("fan-mode", "status:mode") fall through to a symbolic key
    if "-" in spec:
        a_txt, b_txt = spec.split("-", 1)
        a, b = _parse_number(a_txt), _parse_number(b_txt)
        if a is not None and b is not None:
            return [(a + i, i) for i in range(b - a + 1)] if b >= a else []

    if ":" in spec:
        a_txt, count_txt = spec.split(":", 1)
        a, count = _parse_number(a_txt), _parse_number(count_txt)
        if a is not None and count is not None:
            return [(a + i, i) for i in range(count)] if count > 0 else []

    n = _parse_number(spec)
    if n is not None:
        return [(n, 0)]

    return [(spec, 0)]


def resolve_topic(template: str, address: Address, offset: int) -> str:
    return template.replace("{offset}", str(offset)).replace("{register}", str(address))


def expand(spec: MappingSpec) -> List[MappingEntry]:
    """Expand one MappingSpec into its concrete entries, in offset order."""
    return [
        MappingEntry(spec=spec, address=address, offset=offset, topic=resolve_topic(spec.topic, address, offset))
        for address, offset in parse_register_spec(spec.register)
    ]


def validate_document(doc: Any) -> Tuple[List[MappingSpec], List[ValidationIssue]]:
    """Check a parsed document and collect every problem before failing."""
    if not isinstance(doc, Mapping) or not isinstance(doc.get("mappings"), list):
        return [], [ValidationIssue(None, None, "mapping file must contain a top-level `mappings` list")]

    issues: List[ValidationIssue] = []
    specs: List[MappingSpec] = []
    for idx, raw in enumerate(doc["mappings"]):
        if not isinstance(raw, Mapping):
            issues.append(ValidationIssue(idx, None, "entry must be a mapping"))
            continue
        missing = [name for name in REQUIRED_FIELDS if raw.get(name) is None or str(raw.get(name)).strip() == ""]
        for name in missing:
            issues.append(ValidationIssue(idx, name, f"missing {name}"))
        if missing:
            continue
        try:
            specs.append(MappingSpec.from_dict(raw))
        except (TypeError, ValueError) as e:
            issues.append(ValidationIssue(idx, None, f"invalid value: {e}"))
    return specs, issues


def read_document(path: Union[str, Path]) -> Any:
    """Read a YAML/JSON register map file."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegisterMapError(f"Cannot read register map {file_path}: {e}") from e

    try:
        if file_path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, ValueError) as e:
        raise RegisterMapError(f"Cannot parse register map {file_path}: {e}") from e


class RegisterMap:
    """Owner of the active register map generation.

    Usage:
        rm = RegisterMap()
        result = rm.load("config/register-map.yaml")
        entry = rm.lookup(40001)
        rm.watch()           # hot reload on file change (needs a running loop)
        await rm.close()
    """

    def __init__(self, debounce: float = DEFAULT_DEBOUNCE, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.path: Optional[Path] = None
        self.on_reload: List[Callable[[ValidationResult], None]] = []
        self._snapshot: RegisterMapSnapshot = EMPTY_SNAPSHOT
        self._generation = 0
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> RegisterMapSnapshot:
        """The active generation; hold on to it for a consistent view."""
        return self._snapshot

    def load(self, source: Union[str, Path, Mapping[str, Any]]) -> ValidationResult:
        """Replace the active generation from a file path or parsed document.

        On any validation issue the previous generation stays active.
        """
        label = "<document>"
        if isinstance(source, Mapping):
            doc = source
        else:
            self.path = Path(source)
            label = str(self.path)
            try:
                doc = read_document(self.path)
            except RegisterMapError as e:
                logger.error("%s", e)
                return ValidationResult(False, [ValidationIssue(None, None, str(e))])

        specs, issues = validate_document(doc)
        if issues:
            logger.error("Register map %s has %d validation error(s): %s", label, len(issues), "; ".join(map(str, issues)))
            return ValidationResult(False, issues)

        entries: Dict[RegisterKey, MappingEntry] = {}
        for spec in specs:
            for entry in expand(spec):
                if entry.key in entries:
                    logger.warning("Register %s mapped more than once; %r replaces %r",
                                   entry.address, entry.topic, entries[entry.key].topic)
                entries[entry.key] = entry

        self._generation += 1
        self._snapshot = RegisterMapSnapshot(entries, generation=self._generation, source=label)
        logger.info("Register map loaded from %s: %d entries (generation %d)", label, len(entries), self._generation)
        return ValidationResult(True)

    def reload(self) -> ValidationResult:
        if self.path is None:
            raise RegisterMapError("No register map file has been loaded")
        result = self.load(self.path)
        for callback in self.on_reload:
            callback(result)
        return result

    def lookup(self, address: Address) -> Optional[MappingEntry]:
        return self._snapshot.lookup(address)

    def expand(self, spec: Union[MappingSpec, Mapping[str, Any]]) -> List[MappingEntry]:
        if not isinstance(spec, MappingSpec):
            spec = MappingSpec.from_dict(spec)
        return expand(spec)

    def entries(self) -> List[MappingEntry]:
        return self._snapshot.entries()

    def __len__(self) -> int:
        return len(self._snapshot)

    # Hot reload

    def watch(self) -> asyncio.Task:
        """Start polling the loaded file and reload after changes settle."""
        if self.path is None:
            raise RegisterMapError("No register map file to watch")
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self._watch_loop())
            logger.info("Watching register map %s", self.path)
        return self._watch_task

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def _stat(self) -> Optional[Tuple[int, int]]:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    async def _watch_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last = self._stat()
        changed_at: Optional[float] = None
        while True:
            await asyncio.sleep(self.poll_interval)
            current = self._stat()
            if current != last:
                # restart the quiescence window on every change
                last = current
                changed_at = loop.time()
                continue
            if changed_at is not None and loop.time() - changed_at >= self.debounce:
                changed_at = None
                if current is None:
                    logger.warning("Register map %s disappeared; keeping generation %d", self.path, self._generation)
                    continue
                logger.info("Register map %s changed, reloading", self.path)
                self.reload()

    async def close(self) -> None:
        """Stop watching and release the active generation."""
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        self._snapshot = EMPTY_SNAPSHOT


def load_register_map(path: Union[str, Path], watch: bool = False) -> RegisterMap:
    """Create a RegisterMap from a file, raising on validation errors."""
    rm = RegisterMap()
    result = rm.load(path)
    if not result.valid:
        raise RegisterMapError("; ".join(result.errors))
    if watch:
        rm.watch()
    return rm
