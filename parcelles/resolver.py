# parcelles/resolver.py
"""
Entity resolver: maps parsed features to planteurs under an import mode.

plan() is side-effect free (lookups only); preview() summarises a plan and
materialize() creates the planteurs a plan calls for. The preview therefore
predicts exactly what apply will do for the same feature set.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Protocol, Tuple

from parcelles import errors
from parcelles.enums import AssignmentKind
from parcelles.schemas import (
    AssignMode,
    AutoCreateMode,
    AutoCreatePreview,
    ExistingPlanteurPreview,
    NewPlanteurPreview,
    OrphanMode,
    ParsedFeature,
)

_WS = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, trimmed, diacritics stripped, inner whitespace collapsed."""
    if name is None:
        return ""
    decomposed = unicodedata.normalize("NFD", str(name))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS.sub(" ", stripped.lower()).strip()


def display_name(name: str) -> str:
    return _WS.sub(" ", name).strip()


class PlanteurDirectory(Protocol):
    """Planteur lookups scoped to one cooperative (active planteurs only)."""

    def by_id(self, planteur_id: str) -> Optional[Tuple[str, str]]:
        ...

    def by_names(self, names_norm: Iterable[str]) -> Dict[str, Tuple[str, str]]:
        """name_norm -> (id, name)"""
        ...


class Assignment(NamedTuple):
    kind: AssignmentKind
    planteur_id: Optional[str] = None
    name_norm: Optional[str] = None


class ResolutionPlan:
    def __init__(self):
        self.assignments: Dict[str, Assignment] = {}
        self.new_planteurs: Dict[str, dict] = {}       # name_norm -> {"name", "count"}
        self.existing_planteurs: Dict[str, dict] = {}  # id -> {"name", "count"}
        self.orphan_count = 0

    def orphan(self, temp_id: str) -> None:
        self.assignments[temp_id] = Assignment(AssignmentKind.ORPHAN)
        self.orphan_count += 1

    def existing(self, temp_id: str, planteur_id: str, name: str) -> None:
        self.assignments[temp_id] = Assignment(AssignmentKind.EXISTING, planteur_id=planteur_id)
        entry = self.existing_planteurs.setdefault(planteur_id, {"name": name, "count": 0})
        entry["count"] += 1

    def new(self, temp_id: str, name_norm: str, name: str) -> None:
        self.assignments[temp_id] = Assignment(AssignmentKind.NEW, name_norm=name_norm)
        entry = self.new_planteurs.setdefault(name_norm, {"name": name, "count": 0})
        entry["count"] += 1


# ---------- planners, one per mode ----------

def _plan_assign(features: List[ParsedFeature], mode: AssignMode, directory: PlanteurDirectory) -> ResolutionPlan:
    found = directory.by_id(mode.planteur_id)
    if found is None:
        raise errors.validation_error("mode.planteur_id", "Planteur not found in this cooperative")
    plan = ResolutionPlan()
    for f in features:
        plan.existing(f.temp_id, found[0], found[1])
    return plan


def _plan_orphan(features: List[ParsedFeature], mode: OrphanMode, directory: PlanteurDirectory) -> ResolutionPlan:
    plan = ResolutionPlan()
    for f in features:
        plan.orphan(f.temp_id)
    return plan


def _plan_auto_create(features: List[ParsedFeature], mode: AutoCreateMode, directory: PlanteurDirectory) -> ResolutionPlan:
    names: List[Tuple[ParsedFeature, str, str]] = []
    for f in features:
        raw = f.properties.get(mode.name_field)
        name = display_name(str(raw)) if raw is not None else ""
        names.append((f, name, normalize_name(name)))

    known = directory.by_names({norm for _, _, norm in names if norm})
    plan = ResolutionPlan()
    for f, name, norm in names:
        if not norm:
            plan.orphan(f.temp_id)
        elif norm in known:
            pid, pname = known[norm]
            plan.existing(f.temp_id, pid, pname)
        else:
            # later features with the same normalised name join this entry
            plan.new(f.temp_id, norm, name)
    return plan


PLANNERS: Dict[type, Callable[..., ResolutionPlan]] = {
    AssignMode: _plan_assign,
    OrphanMode: _plan_orphan,
    AutoCreateMode: _plan_auto_create,
}


def plan(features: List[ParsedFeature], mode, directory: PlanteurDirectory) -> ResolutionPlan:
    planner = PLANNERS.get(type(mode))
    if planner is None:
        raise TypeError(f"No planner registered for import mode {type(mode).__name__}")
    return planner(features, mode, directory)


def preview(p: ResolutionPlan) -> AutoCreatePreview:
    return AutoCreatePreview(
        new_planteurs=[
            NewPlanteurPreview(name=v["name"], name_norm=norm, parcelle_count=v["count"])
            for norm, v in p.new_planteurs.items()
        ],
        existing_planteurs=[
            ExistingPlanteurPreview(id=pid, name=v["name"], parcelle_count=v["count"])
            for pid, v in p.existing_planteurs.items()
        ],
        orphan_count=p.orphan_count,
    )


CreatePlanteur = Callable[[str, str], Optional[str]]   # (name, name_norm) -> new id, None on failure


def materialize(p: ResolutionPlan, create: CreatePlanteur) -> Dict[str, str]:
    """
    Create every planned new planteur once; returns name_norm -> id.
    Names whose creation failed are left out.
    """
    created: Dict[str, str] = {}
    for norm, v in p.new_planteurs.items():
        pid = create(v["name"], norm)
        if pid is not None:
            created[norm] = pid
    return created


def planteur_for(assignment: Assignment, created: Dict[str, str]) -> Optional[str]:
    """Planteur id for an assignment; KeyError when its planteur was never created."""
    if assignment.kind == AssignmentKind.EXISTING:
        return assignment.planteur_id
    if assignment.kind == AssignmentKind.NEW:
        return created[assignment.name_norm]
    return None
