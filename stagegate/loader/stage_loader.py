"""
YAML loader for stage, trigger and catalog definitions.

A stage file looks like:

    stage:
      id: iron_age
      display_name: Iron Age
      dependency: stone_age
      unlock_message: "You can now work iron"
    items: [base:iron_ingot]
    item_tags: ["#base:iron_ores"]
    unlocked_items: [base:iron_nugget]
    mods: [ironworks]
    names: [iron]
    interactions:
      - type: use
        held_item: base:flint_and_steel
        target_block: "#portal"

Malformed documents are skipped and reported as ConfigError; malformed
list entries are dropped with a warning.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stagegate.engines.triggers.trigger_engine import TriggerKind, TriggerRule
from stagegate.kernel.errors import ConfigError
from stagegate.kernel.rules.catalog import Resource
from stagegate.kernel.stages.definitions import (
    InteractionRule,
    KindRules,
    ResourceKind,
    RuleSet,
    StageDefinition,
)
from stagegate.kernel.stages.stage_id import InvalidStageId, StageId, try_normalize_resource_id
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

# kind -> (direct ids, tags, kind namespaces, whitelist)
_KIND_KEYS: Dict[ResourceKind, Tuple[Optional[str], ...]] = {
    ResourceKind.ITEM: ("items", "item_tags", "item_mods", "unlocked_items"),
    ResourceKind.BLOCK: ("blocks", "block_tags", "block_mods", "unlocked_blocks"),
    ResourceKind.ENTITY: ("entities", "entity_tags", "entity_mods", "unlocked_entities"),
    ResourceKind.FLUID: ("fluids", "fluid_tags", "fluid_mods", "unlocked_fluids"),
    ResourceKind.RECIPE: ("recipes", "recipe_tags", None, None),
    ResourceKind.REGION: ("dimensions", None, None, None),
}


class StageHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    display_name: str = ""
    description: str = ""
    icon: Optional[str] = None
    unlock_message: Optional[str] = None
    dependency: Union[str, List[str], None] = None


class InteractionDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    held_item: str = "*"
    target_block: str = "*"
    description: str = ""


class StageDocument(BaseModel):
    """Raw shape of a stage file before normalization."""

    model_config = ConfigDict(extra="ignore")

    stage: StageHeader
    items: List[Any] = Field(default_factory=list)
    item_tags: List[Any] = Field(default_factory=list)
    item_mods: List[Any] = Field(default_factory=list)
    unlocked_items: List[Any] = Field(default_factory=list)
    blocks: List[Any] = Field(default_factory=list)
    block_tags: List[Any] = Field(default_factory=list)
    block_mods: List[Any] = Field(default_factory=list)
    unlocked_blocks: List[Any] = Field(default_factory=list)
    entities: List[Any] = Field(default_factory=list)
    entity_tags: List[Any] = Field(default_factory=list)
    entity_mods: List[Any] = Field(default_factory=list)
    unlocked_entities: List[Any] = Field(default_factory=list)
    fluids: List[Any] = Field(default_factory=list)
    fluid_tags: List[Any] = Field(default_factory=list)
    fluid_mods: List[Any] = Field(default_factory=list)
    unlocked_fluids: List[Any] = Field(default_factory=list)
    recipes: List[Any] = Field(default_factory=list)
    recipe_tags: List[Any] = Field(default_factory=list)
    dimensions: List[Any] = Field(default_factory=list)
    mods: List[Any] = Field(default_factory=list)
    names: List[Any] = Field(default_factory=list)
    interactions: List[Any] = Field(default_factory=list)


@dataclass
class LoadResult:
    definitions: List[StageDefinition] = field(default_factory=list)
    errors: List[ConfigError] = field(default_factory=list)


def _ids(values: Iterable[Any], stage: str, key: str, tag: bool = False) -> List[str]:
    cleaned = []
    for value in values:
        raw = str(value).strip() if isinstance(value, (str, int)) else None
        if raw and tag and raw.startswith("#"):
            raw = raw[1:]
        normalized = try_normalize_resource_id(raw) if raw else None
        if normalized is None:
            logger.warning("Skipping invalid entry", extra={"stage": stage, "key": key, "value": repr(value)})
            continue
        cleaned.append(normalized)
    return cleaned


def _words(values: Iterable[Any], stage: str, key: str) -> List[str]:
    cleaned = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            logger.warning("Skipping invalid entry", extra={"stage": stage, "key": key, "value": repr(value)})
            continue
        cleaned.append(value.strip().lower())
    return cleaned


def parse_stage_document(data: Any, source: Optional[str] = None) -> StageDefinition:
    """
    Convert one parsed YAML document into a StageDefinition.

    Raises:
        ConfigError: the document is not a usable stage definition
    """
    if not isinstance(data, dict):
        raise ConfigError("Stage document must be a mapping", source=source)
    try:
        document = StageDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid stage document: {exc.errors()[0]['msg']}", source=source) from exc

    header = document.stage
    try:
        stage_id = StageId.parse(header.id)
    except InvalidStageId as exc:
        raise ConfigError(str(exc), source=source) from exc
    name = str(stage_id)

    raw_deps = header.dependency
    if raw_deps is None:
        raw_deps = []
    elif isinstance(raw_deps, str):
        raw_deps = [raw_deps]
    dependencies: List[StageId] = []
    for raw in raw_deps:
        try:
            dep = StageId.parse(raw)
        except InvalidStageId as exc:
            raise ConfigError(f"Invalid dependency {raw!r}: {exc}", source=source) from exc
        if dep not in dependencies:
            dependencies.append(dep)

    kinds: Dict[ResourceKind, KindRules] = {}
    for kind, (ids_key, tags_key, mods_key, unlocked_key) in _KIND_KEYS.items():
        rules = KindRules(
            ids=frozenset(_ids(getattr(document, ids_key), name, ids_key)) if ids_key else frozenset(),
            tags=_ids(getattr(document, tags_key), name, tags_key, tag=True) if tags_key else (),
            namespaces=_words(getattr(document, mods_key), name, mods_key) if mods_key else (),
            unlocked=frozenset(_ids(getattr(document, unlocked_key), name, unlocked_key)) if unlocked_key else frozenset(),
        )
        if not rules.is_empty():
            kinds[kind] = rules

    interactions: List[InteractionRule] = []
    for entry in document.interactions:
        try:
            parsed = InteractionDocument.model_validate(entry)
        except ValidationError:
            logger.warning("Skipping invalid interaction", extra={"stage": name, "value": repr(entry)})
            continue
        interactions.append(InteractionRule(
            interaction_type=parsed.type.strip().lower(),
            held=parsed.held_item.strip(),
            target=parsed.target_block.strip(),
            description=parsed.description,
        ))

    return StageDefinition(
        id=stage_id,
        display_name=header.display_name,
        description=header.description,
        icon=header.icon,
        unlock_message=header.unlock_message,
        dependencies=tuple(dependencies),
        rules=RuleSet(
            kinds=kinds,
            namespaces=_words(document.mods, name, "mods"),
            names=_words(document.names, name, "names"),
            interactions=tuple(interactions),
        ),
    )


class StageLoader:
    """
    Loads every *.yaml / *.yml stage file under a directory.

    Files starting with "_" are ignored. Files are read in sorted order so
    registration order (and therefore rule precedence ties) is stable.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _files(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(
            p for p in self.directory.rglob("*")
            if p.is_file() and p.suffix in (".yaml", ".yml") and not p.name.startswith("_")
        )

    def load(self) -> LoadResult:
        result = LoadResult()
        if not self.directory.exists():
            result.errors.append(ConfigError("Stage directory not found", source=str(self.directory)))
            logger.warning("Stage directory not found", extra={"directory": str(self.directory)})
            return result

        for path in self._files():
            self._load_file(path, result)

        logger.info(
            "Stage definitions loaded",
            extra={"directory": str(self.directory), "loaded": len(result.definitions), "errors": len(result.errors)},
        )
        return result

    def _load_file(self, path: Path, result: LoadResult) -> None:
        try:
            with path.open("r", encoding="utf-8") as f:
                documents = list(yaml.safe_load_all(f))
        except (OSError, yaml.YAMLError) as exc:
            error = ConfigError(f"Unreadable stage file: {exc}", source=str(path))
            result.errors.append(error)
            logger.warning("Skipping stage file", extra={"source": str(path), "error": str(error)})
            return

        for position, data in enumerate(documents):
            if not data:
                continue
            source = str(path) if len(documents) == 1 else f"{path}#{position}"
            try:
                result.definitions.append(parse_stage_document(data, source))
            except ConfigError as error:
                result.errors.append(error)
                logger.warning("Skipping stage definition", extra={"source": source, "error": str(error)})


def _read_mapping(path: Union[str, Path]) -> Dict[str, Any]:
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unreadable file: {exc}", source=str(path)) from exc
    if not isinstance(data, dict):
        raise ConfigError("Expected a mapping at the top level", source=str(path))
    return data


def parse_triggers(data: Dict[str, Any], source: Optional[str] = None) -> Tuple[List[TriggerRule], List[ConfigError]]:
    """
    Parse `{kind: {key: stage | [stages]}}`. Bad sections and entries are skipped.
    """
    rules: List[TriggerRule] = []
    errors: List[ConfigError] = []
    for raw_kind, entries in data.items():
        try:
            kind = TriggerKind(str(raw_kind).strip().lower())
        except ValueError:
            errors.append(ConfigError(f"Unknown trigger kind {raw_kind!r}", source=source))
            continue
        if not isinstance(entries, dict):
            errors.append(ConfigError(f"Trigger section {kind.value} must be a mapping", source=source))
            continue
        for key, targets in entries.items():
            for target in targets if isinstance(targets, list) else [targets]:
                try:
                    rules.append(TriggerRule(kind=kind, key=str(key), stage=StageId.parse(target)))
                except (InvalidStageId, ValidationError) as exc:
                    errors.append(ConfigError(f"Invalid trigger {kind.value}:{key}: {exc}", source=source))
    for error in errors:
        logger.warning("Skipping trigger definition", extra={"error": str(error)})
    return rules, errors


def load_triggers(path: Union[str, Path]) -> Tuple[List[TriggerRule], List[ConfigError]]:
    return parse_triggers(_read_mapping(path), source=str(path))


def parse_catalog(data: Dict[str, Any], source: Optional[str] = None) -> Tuple[List[Resource], List[ConfigError]]:
    """
    Parse `{kind: [id | {id, tags}]}` into catalog resources.
    """
    resources: List[Resource] = []
    errors: List[ConfigError] = []
    for raw_kind, entries in data.items():
        try:
            kind = ResourceKind(str(raw_kind).strip().lower())
        except ValueError:
            errors.append(ConfigError(f"Unknown resource kind {raw_kind!r}", source=source))
            continue
        if entries is None:
            continue
        if not isinstance(entries, list):
            errors.append(ConfigError(f"Catalog section {kind.value} must be a list", source=source))
            continue
        for entry in entries:
            if isinstance(entry, str):
                resource_id, tags = entry, []
            elif isinstance(entry, dict) and isinstance(entry.get("id"), str):
                raw_tags = entry.get("tags") or []
                if not isinstance(raw_tags, list):
                    errors.append(ConfigError(f"Tags of {kind.value} {entry['id']!r} must be a list", source=source))
                    continue
                resource_id, tags = entry["id"], [str(t) for t in raw_tags]
            else:
                errors.append(ConfigError(f"Invalid {kind.value} entry {entry!r}", source=source))
                continue
            try:
                resources.append(Resource.of(kind, resource_id, tags))
            except InvalidStageId as exc:
                errors.append(ConfigError(str(exc), source=source))
    for error in errors:
        logger.warning("Skipping catalog entry", extra={"error": str(error)})
    return resources, errors


def load_catalog(path: Union[str, Path]) -> Tuple[List[Resource], List[ConfigError]]:
    return parse_catalog(_read_mapping(path), source=str(path))
