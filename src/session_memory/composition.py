"""Composition engine: merge several sessions into one budgeted artifact."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .budget import AllocationStrategy, BudgetLedger, allocate_budget
from .composition_parts import (
    PartSelection,
    has_multiple_parts,
    select_versions_for_parts,
    total_part_tokens,
)
from .config import CompositionConfig
from .errors import (
    CompositionExists,
    CompositionNotFound,
    DuplicateLevel,
    InvalidSettings,
    SessionNotFound,
    VersionNotFound,
)
from .models import (
    ORIGINAL_VERSION_ID,
    CompositionComponent,
    CompositionRecord,
    CompressionRecord,
    Message,
    ProjectManifest,
    SessionEntry,
    utc_now,
)
from .naming import composed_dir, sanitize_name
from .rendering import (
    ComposedSection,
    render_composition_jsonl,
    render_composition_markdown,
    render_original_markdown,
)
from .scoring import (
    SelectionCriteria,
    SelectionOutcome,
    select_best_version,
    synthesis_settings,
)
from .settings import CompressionSettings, effective_ratio, parse_settings
from .telemetry import trace_compose
from .transcript import estimate_tokens
from .versions import VersionManager

_log = logging.getLogger(__name__)

AUTO = "auto"

# ---------------------------------------------------------------------------
# Requests and plans
# ---------------------------------------------------------------------------


class ComponentRequest(BaseModel):
    """One session in a composition request."""

    session_id: str
    version_id: str = AUTO  # "auto" | "original" | explicit version id
    recompress_settings: CompressionSettings | None = None
    use_parts: bool | None = None
    weight: float | None = None
    token_budget: int | None = None


class CompositionRequest(BaseModel):
    name: str
    description: str = ""
    components: list[ComponentRequest] = Field(default_factory=list)
    total_token_budget: int
    allocation_strategy: AllocationStrategy = AllocationStrategy.EQUAL
    preferred_ratio: float | None = None
    prioritize_keepits: bool = False
    prefer_recent: bool = False


class PlanKind(StrEnum):
    ORIGINAL = "original"
    EXPLICIT = "explicit"
    EXISTING = "existing"
    PARTS = "parts"
    SYNTHESIZE = "synthesize"
    RECOMPRESS = "recompress"


@dataclass
class ComponentPlan:
    session_id: str
    order: int
    budget: int
    kind: PlanKind
    version_ids: list[str] = field(default_factory=list)
    score: float | None = None
    estimated_tokens: int = 0
    settings: Any = None
    parts: list[PartSelection] = field(default_factory=list)
    note: str = ""


@dataclass
class CompositionPreview:
    name: str
    allocation_strategy: AllocationStrategy
    total_token_budget: int
    components: list[ComponentPlan]

    @property
    def estimated_tokens(self) -> int:
        return sum(c.estimated_tokens for c in self.components)

    @property
    def fits_budget(self) -> bool:
        return self.estimated_tokens <= self.total_token_budget

    @property
    def needs_compression(self) -> list[str]:
        return [
            c.session_id
            for c in self.components
            if c.kind in (PlanKind.SYNTHESIZE, PlanKind.RECOMPRESS)
        ]


def _coerce_request(request: CompositionRequest | dict[str, Any]) -> CompositionRequest:
    if isinstance(request, CompositionRequest):
        return request
    try:
        return CompositionRequest.model_validate(request)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise InvalidSettings("Invalid composition request", errors) from exc


# ---------------------------------------------------------------------------
# CompositionEngine
# ---------------------------------------------------------------------------


class CompositionEngine:
    """Selects, allocates and assembles multi-session compositions."""

    def __init__(self, versions: VersionManager, config: CompositionConfig | None = None) -> None:
        self._versions = versions
        self._config = config or versions.config.composition

    # -- validation and planning --------------------------------------------

    def _validate(self, manifest: ProjectManifest, request: CompositionRequest) -> str:
        name = sanitize_name(request.name)
        if not name.strip("-"):
            raise InvalidSettings("Composition name is required")
        if not request.components:
            raise InvalidSettings("At least one component is required")
        if request.total_token_budget < self._config.min_total_budget:
            raise InvalidSettings(
                f"total_token_budget must be at least {self._config.min_total_budget}"
            )
        for comp in request.components:
            if comp.session_id not in manifest.sessions:
                raise SessionNotFound(comp.session_id, manifest.project_id)
        if name in manifest.compositions:
            raise CompositionExists(name)
        return name

    def _allocate(self, manifest: ProjectManifest, request: CompositionRequest) -> list[int]:
        strategy = request.allocation_strategy
        originals = [manifest.sessions[c.session_id].original_tokens for c in request.components]
        weights = None
        manual = None
        if strategy == AllocationStrategy.CUSTOM:
            if any(c.weight is None for c in request.components):
                raise InvalidSettings("custom allocation needs a weight on every component")
            weights = [float(c.weight or 0.0) for c in request.components]
        if strategy == AllocationStrategy.MANUAL:
            if any(c.token_budget is None for c in request.components):
                raise InvalidSettings("manual allocation needs a token_budget on every component")
            manual = [int(c.token_budget or 0) for c in request.components]
        return allocate_budget(
            strategy,
            request.total_token_budget,
            originals,
            weights=weights,
            manual=manual,
            overhead=self._config.component_overhead_tokens,
        )

    def _plan_component(
        self,
        entry: SessionEntry,
        comp: ComponentRequest,
        order: int,
        budget: int,
        criteria: SelectionCriteria,
    ) -> ComponentPlan:
        plan = ComponentPlan(session_id=entry.session_id, order=order, budget=budget, kind=PlanKind.ORIGINAL)
        if comp.recompress_settings is not None:
            settings = parse_settings(comp.recompress_settings)
            plan.kind = PlanKind.RECOMPRESS
            plan.settings = settings
            plan.estimated_tokens = int(entry.original_tokens / max(effective_ratio(settings), 1))
            return plan
        if comp.version_id == ORIGINAL_VERSION_ID:
            plan.version_ids = [ORIGINAL_VERSION_ID]
            plan.estimated_tokens = entry.original_tokens
            return plan
        if comp.version_id != AUTO:
            record = entry.find_version(comp.version_id)
            if record is None:
                raise VersionNotFound(entry.session_id, comp.version_id)
            plan.kind = PlanKind.EXPLICIT
            plan.version_ids = [record.version_id]
            plan.estimated_tokens = record.output_tokens
            return plan
        if comp.use_parts is not False and has_multiple_parts(entry):
            parts = select_versions_for_parts(
                entry, budget, criteria, self._config.part_selection_threshold
            )
            plan.kind = PlanKind.PARTS
            plan.parts = parts
            plan.version_ids = [p.record.version_id for p in parts]
            plan.estimated_tokens = total_part_tokens(parts)
            plan.note = f"{sum(p.fallback for p in parts)} part(s) used fallback"
            return plan
        selection = select_best_version(entry, criteria, self._config.selection_threshold)
        plan.score = selection.score
        plan.note = selection.reason
        if selection.outcome == SelectionOutcome.ORIGINAL:
            plan.version_ids = [ORIGINAL_VERSION_ID]
            plan.estimated_tokens = entry.original_tokens
        elif selection.outcome == SelectionOutcome.EXISTING:
            plan.kind = PlanKind.EXISTING
            plan.version_ids = [selection.version_id or ""]
            plan.estimated_tokens = selection.output_tokens
        else:
            plan.kind = PlanKind.SYNTHESIZE
            plan.settings = synthesis_settings(entry.original_tokens, budget, order + 1)
            plan.estimated_tokens = budget
        return plan

    def _plan(
        self, manifest: ProjectManifest, request: CompositionRequest
    ) -> tuple[str, list[ComponentPlan]]:
        name = self._validate(manifest, request)
        allocations = self._allocate(manifest, request)
        plans: list[ComponentPlan] = []
        for order, (comp, budget) in enumerate(zip(request.components, allocations)):
            criteria = SelectionCriteria(
                max_tokens=budget,
                preferred_ratio=request.preferred_ratio,
                prioritize_keepits=request.prioritize_keepits,
                prefer_recent=request.prefer_recent,
            )
            plans.append(
                self._plan_component(manifest.sessions[comp.session_id], comp, order, budget, criteria)
            )
        return name, plans

    # -- public operations ---------------------------------------------------

    def preview(
        self, project_id: str, request: CompositionRequest | dict[str, Any]
    ) -> CompositionPreview:
        """Selection and allocation only; writes nothing and creates no versions."""
        req = _coerce_request(request)
        manifest = self._versions.load_manifest(project_id)
        name, plans = self._plan(manifest, req)
        return CompositionPreview(
            name=name,
            allocation_strategy=req.allocation_strategy,
            total_token_budget=req.total_token_budget,
            components=plans,
        )

    async def compose(
        self, project_id: str, request: CompositionRequest | dict[str, Any]
    ) -> CompositionRecord:
        req = _coerce_request(request)
        manifest = self._versions.load_manifest(project_id)
        name, plans = self._plan(manifest, req)

        with trace_compose(project_id, name, len(plans)):
            sections: list[ComposedSection] = []
            for plan in plans:
                if plan.kind in (PlanKind.SYNTHESIZE, PlanKind.RECOMPRESS):
                    record = await self._ensure_version(
                        project_id, plan.session_id, plan.settings, plan.order + 1
                    )
                    plan.version_ids = [record.version_id]
                sections.append(self._build_section(project_id, plan))

            components = [
                CompositionComponent(
                    session_id=plan.session_id,
                    order=plan.order,
                    version_id=plan.version_ids[0] if len(plan.version_ids) == 1 else "parts",
                    part_versions=plan.version_ids if plan.kind == PlanKind.PARTS else [],
                    token_budget=plan.budget,
                    actual_tokens=section.tokens,
                    actual_messages=len(section.messages),
                )
                for plan, section in zip(plans, sections)
            ]
            record = CompositionRecord(
                composition_id=str(uuid.uuid4()),
                name=name,
                description=req.description,
                created_at=utc_now(),
                components=components,
                allocation_strategy=str(req.allocation_strategy),
                total_token_budget=req.total_token_budget,
                actual_tokens=sum(s.tokens for s in sections),
                total_messages=sum(len(s.messages) for s in sections),
            )
            ledger = BudgetLedger(req.total_token_budget, [p.budget for p in plans])
            for i, section in enumerate(sections):
                ledger.charge(i, section.tokens)
            for i in ledger.over_allocation():
                _log.debug(
                    "Component %s used %d tokens of a %d share",
                    plans[i].session_id, sections[i].tokens, plans[i].budget,
                )
            if not ledger.fits():
                _log.warning(
                    "Composition %s exceeds its budget by %d tokens", name, ledger.overflow()
                )

            record = self._write_outputs(project_id, record, sections)
            folder = composed_dir(project_id, name)
            try:
                async with self._versions.edit_manifest(project_id) as current:
                    if name in current.compositions:
                        raise CompositionExists(name)
                    current.compositions[name] = record
            except Exception:
                self._versions.files.delete_tree(folder)
                raise

        _log.info(
            "Composed %s from %d session(s): %d tokens, %d messages",
            name, len(sections), record.actual_tokens, record.total_messages,
        )
        return record

    async def _ensure_version(
        self, project_id: str, session_id: str, settings: CompressionSettings, distance: int
    ) -> CompressionRecord:
        try:
            return await self._versions.create_version(
                project_id, session_id, settings, session_distance=distance
            )
        except DuplicateLevel as exc:
            _log.info("Reusing %s for %s instead of compressing again", exc.version_id, session_id)
            return self._versions.get_version(project_id, session_id, exc.version_id)

    def _build_section(self, project_id: str, plan: ComponentPlan) -> ComposedSection:
        bodies: list[str] = []
        messages: list[Message] = []
        for version_id in plan.version_ids:
            if version_id == ORIGINAL_VERSION_ID:
                original = self._versions.get_version_messages(project_id, plan.session_id, version_id)
                bodies.append(render_original_markdown(plan.session_id, original))
                messages.extend(original)
            else:
                bodies.append(
                    self._versions.get_version_content(project_id, plan.session_id, version_id, "md")
                )
                messages.extend(
                    self._versions.get_version_messages(project_id, plan.session_id, version_id)
                )
        body = "\n\n".join(b.rstrip() for b in bodies)
        return ComposedSection(
            session_id=plan.session_id,
            order=plan.order,
            version_ids=list(plan.version_ids),
            body=body,
            messages=messages,
            tokens=estimate_tokens(body),
        )

    def _write_outputs(
        self, project_id: str, record: CompositionRecord, sections: list[ComposedSection]
    ) -> CompositionRecord:
        folder = composed_dir(project_id, record.name)
        files = self._versions.files
        outputs = {
            "md": f"{folder}/{record.name}.md",
            "jsonl": f"{folder}/{record.name}.jsonl",
            "metadata": f"{folder}/composition.json",
        }
        record = record.model_copy(update={"output_files": outputs})
        try:
            files.write_text(outputs["md"], render_composition_markdown(record, sections))
            files.write_text(outputs["jsonl"], render_composition_jsonl(record, sections))
            files.write_text(outputs["metadata"], record.model_dump_json(indent=2))
        except Exception:
            files.delete_tree(folder)
            raise
        return record

    # -- management ----------------------------------------------------------

    def get(self, project_id: str, name: str) -> CompositionRecord:
        manifest = self._versions.load_manifest(project_id)
        record = manifest.compositions.get(name)
        if record is None:
            raise CompositionNotFound(name)
        return record

    def list_compositions(self, project_id: str) -> list[CompositionRecord]:
        """Newest first."""
        manifest = self._versions.load_manifest(project_id)
        return sorted(manifest.compositions.values(), key=lambda c: c.created_at, reverse=True)

    async def delete(self, project_id: str, name: str) -> CompositionRecord:
        async with self._versions.edit_manifest(project_id) as manifest:
            record = manifest.compositions.pop(name, None)
            if record is None:
                raise CompositionNotFound(name)
        self._versions.files.delete_tree(composed_dir(project_id, name))
        _log.info("Deleted composition %s", name)
        return record

    def get_content(self, project_id: str, name: str, fmt: str = "md") -> str:
        record = self.get(project_id, name)
        if fmt not in record.output_files:
            raise InvalidSettings(f"Unsupported format: {fmt}")
        content = self._versions.files.read_text(record.output_files[fmt])
        if content is None:
            raise CompositionNotFound(name)
        return content

    async def record_usage(self, project_id: str, name: str, session_id: str) -> CompositionRecord:
        async with self._versions.edit_manifest(project_id) as manifest:
            record = manifest.compositions.get(name)
            if record is None:
                raise CompositionNotFound(name)
            if session_id not in record.used_in_sessions:
                record.used_in_sessions.append(session_id)
        return record
