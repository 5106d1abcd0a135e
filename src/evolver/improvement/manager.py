"""Improvement lifecycle: create, apply, validate, roll back.

An improvement moves ``proposed -> applied -> accepted | rejected``; an edit
that fails its regression checks goes from ``proposed`` straight to
``rejected`` without a commit. At most one improvement is applied (pending
validation) at a time. Every transition is appended to the audit trail;
nothing in the trail is ever rewritten.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from evolver.core.errors import (
    ConfigurationError,
    DuplicateImprovementError,
    ImprovementStateError,
    ProposerMalformedError,
    VersionControlError,
)
from evolver.core.files import atomic_write_json
from evolver.core.logging import get_logger
from evolver.core.models import (
    Improvement,
    ImprovementEvent,
    ImprovementState,
    ImprovementType,
    utcnow,
)
from evolver.improvement.docstore import DocumentationStore
from evolver.improvement.proposer import ImprovementPayload, payload_type
from evolver.improvement.regression import RegressionGate
from evolver.improvement.vcs import VersionControl

_logger = get_logger("improvements")


def validate_improvement(improvement: Improvement) -> list[str]:
    """Return the rule violations of an improvement; empty when valid."""
    issues: list[str] = []
    if not improvement.tool.strip():
        issues.append("tool name is required")
    if not improvement.proposed.strip():
        issues.append("proposed text must not be empty")
    elif improvement.proposed.strip() == improvement.current.strip():
        issues.append("proposed text is identical to the current documentation")
    if not improvement.rationale.strip():
        issues.append("rationale is required")
    if not 0.0 <= improvement.expected_impact <= 1.0:
        issues.append("expected impact must be between 0 and 1")
    if improvement.type == ImprovementType.PARAMETER and improvement.field in (
        "",
        "parameters.",
    ):
        issues.append("parameter improvements need a parameter name")
    return issues


def commit_metadata(improvement: Improvement) -> dict[str, str]:
    return {
        "Generation": str(improvement.generation),
        "Expected Impact": f"{improvement.expected_impact * 100:.0f}%",
        "Rationale": improvement.rationale,
        "Field": improvement.field,
        "Current": improvement.current or "(none)",
        "Proposed": improvement.proposed,
    }


@dataclass
class ImprovementStatistics:
    attempted: int
    accepted: int
    rejected: int
    pending: int
    average_impact: float
    by_type: dict[str, int]

    @property
    def acceptance_rate(self) -> float:
        decided = self.accepted + self.rejected
        return self.accepted / decided if decided else 0.0


class ImprovementManager:
    """Owns the improvement lifecycle and its audit trail."""

    def __init__(
        self,
        docstore: DocumentationStore,
        vcs: VersionControl,
        noise_threshold: float = 2.0,
        regression: RegressionGate | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            docstore: Where documentation fields are read and written.
            vcs: Version control collaborator receiving one commit per apply
                and one per rollback.
            noise_threshold: Score drop tolerated before an applied
                improvement is rejected.
            regression: Checks an edit must pass before it is committed.
                None commits without checking.
        """
        self.docstore = docstore
        self.vcs = vcs
        self.noise_threshold = noise_threshold
        self.regression = regression
        self._improvements: dict[str, Improvement] = {}
        self._events: list[ImprovementEvent] = []
        self._pending_id: str | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def pending(self) -> Improvement | None:
        """The applied improvement awaiting validation, if any."""
        if self._pending_id is None:
            return None
        return self._improvements[self._pending_id]

    def _record(
        self,
        improvement: Improvement,
        from_state: ImprovementState | None,
        score: float | None = None,
        commit_id: str | None = None,
        note: str = "",
    ) -> None:
        self._improvements[improvement.id] = improvement
        self._events.append(
            ImprovementEvent(
                improvement_id=improvement.id,
                from_state=from_state,
                to_state=improvement.state,
                score=score,
                commit_id=commit_id,
                note=note,
            )
        )

    def create(
        self,
        payload: ImprovementPayload,
        generation: int,
        allowed_tools: Sequence[str] = (),
    ) -> Improvement:
        """Build a proposed improvement from a validated payload.

        Args:
            payload: The proposer's validated answer.
            generation: Generation the proposal was made for.
            allowed_tools: Tools whose documentation may be edited. Empty
                allows any tool.

        Raises:
            DuplicateImprovementError: If the same edit was tried before.
            ProposerMalformedError: If the edit targets a tool outside
                ``allowed_tools``, its documentation cannot be read, or it
                breaks an improvement rule.
        """
        if allowed_tools and payload.tool not in allowed_tools:
            issue = f"tool {payload.tool!r} is not one of {', '.join(allowed_tools)}"
            raise ProposerMalformedError(
                f"Improvement rejected before apply: {issue}", issues=[issue]
            )

        field = payload.doc_field
        try:
            current = self.docstore.read(payload.tool, field)
        except ValueError as e:
            raise ProposerMalformedError(
                f"Cannot read documentation of {payload.tool!r}: {e}", issues=[str(e)]
            ) from e

        improvement = Improvement(
            type=payload_type(payload),
            tool=payload.tool,
            field=field,
            current=current,
            proposed=payload.proposed,
            rationale=payload.rationale,
            expected_impact=payload.expected_impact,
            generation=generation,
        )

        if self.has_been_tried(improvement):
            raise DuplicateImprovementError(
                f"Improvement for {improvement.tool}.{improvement.field} was already tried"
            )
        issues = validate_improvement(improvement)
        if issues:
            raise ProposerMalformedError(
                f"Improvement rejected before apply: {'; '.join(issues)}",
                issues=issues,
            )

        self._record(improvement, None, note="proposed")
        _logger.info(
            "improvement_proposed",
            improvement_id=improvement.id,
            tool=improvement.tool,
            type=improvement.type.value,
            field=improvement.field,
        )
        return improvement

    async def apply(self, improvement: Improvement, baseline_score: float) -> Improvement:
        """Write the proposed text, run the regression checks and commit it.

        An edit that fails its regression checks is never committed: the
        prior text is restored and the improvement comes back ``rejected``.

        Raises:
            ImprovementStateError: If another improvement is pending or this
                one is not in the proposed state.
            VersionControlError: If the commit fails; the prior text is
                restored first.
        """
        if self._pending_id is not None:
            raise ImprovementStateError(
                f"Improvement {self._pending_id} is still pending validation"
            )
        if improvement.state != ImprovementState.PROPOSED:
            raise ImprovementStateError(
                f"Cannot apply improvement {improvement.id} in state {improvement.state.value}"
            )

        self.docstore.write(improvement.tool, improvement.field, improvement.proposed)
        if self.regression is not None:
            report = await self.regression.check(improvement)
            if not report.safe:
                self.docstore.write(improvement.tool, improvement.field, improvement.current)
                rejected = replace(
                    improvement, state=ImprovementState.REJECTED, updated_at=utcnow()
                )
                self._record(
                    rejected,
                    improvement.state,
                    note=f"failed regression checks: {'; '.join(report.errors)}",
                )
                _logger.warning(
                    "improvement_failed_regression",
                    improvement_id=rejected.id,
                    checks=report.affected,
                    errors=report.errors,
                )
                return rejected

        try:
            commit_id = await self.vcs.commit(
                f"{improvement.type.value}: {improvement.tool}",
                commit_metadata(improvement),
            )
        except Exception:
            self.docstore.write(improvement.tool, improvement.field, improvement.current)
            raise

        applied = replace(
            improvement,
            state=ImprovementState.APPLIED,
            baseline_score=baseline_score,
            commit_id=commit_id,
            updated_at=utcnow(),
        )
        self._record(applied, improvement.state, score=baseline_score, commit_id=commit_id)
        self._pending_id = applied.id
        _logger.info(
            "improvement_applied",
            improvement_id=applied.id,
            baseline_score=round(baseline_score, 2),
            commit=commit_id,
        )
        return applied

    async def validate(self, score: float) -> Improvement:
        """Accept or roll back the pending improvement given the new score.

        A score below ``baseline - noise_threshold`` restores the prior text
        with a single rollback commit and rejects the improvement. When the
        rollback commit fails the improvement is still rejected, with no
        rollback commit id.

        Raises:
            ImprovementStateError: If nothing is pending.
        """
        pending = self.pending
        if pending is None:
            raise ImprovementStateError("No applied improvement to validate")
        baseline = pending.baseline_score if pending.baseline_score is not None else 0.0

        if score < baseline - self.noise_threshold:
            self.docstore.write(pending.tool, pending.field, pending.current)
            metadata = {
                "Generation": str(pending.generation),
                "Reverts": pending.commit_id or "",
                "Baseline": f"{baseline:.1f}",
                "Score": f"{score:.1f}",
            }
            note = "rolled back"
            rollback_id: str | None
            try:
                rollback_id = await self.vcs.commit(
                    f"rollback {pending.type.value}: {pending.tool}", metadata
                )
            except VersionControlError as e:
                rollback_id = None
                note = "rollback commit failed"
                _logger.error(
                    "rollback_commit_failed", improvement_id=pending.id, error=str(e)
                )
            decided = replace(
                pending,
                state=ImprovementState.REJECTED,
                after_score=score,
                rollback_commit_id=rollback_id,
                updated_at=utcnow(),
            )
            self._record(
                decided, pending.state, score=score, commit_id=rollback_id, note=note
            )
            _logger.warning(
                "improvement_rejected",
                improvement_id=decided.id,
                baseline_score=round(baseline, 2),
                score=round(score, 2),
                rollback_commit=rollback_id,
            )
        else:
            decided = replace(
                pending,
                state=ImprovementState.ACCEPTED,
                after_score=score,
                updated_at=utcnow(),
            )
            self._record(decided, pending.state, score=score)
            _logger.info(
                "improvement_accepted",
                improvement_id=decided.id,
                baseline_score=round(baseline, 2),
                score=round(score, 2),
            )

        self._pending_id = None
        return decided

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, improvement_id: str) -> Improvement | None:
        return self._improvements.get(improvement_id)

    def history(self) -> list[Improvement]:
        return list(self._improvements.values())

    def events(self) -> list[ImprovementEvent]:
        return list(self._events)

    def by_state(self, state: ImprovementState) -> list[Improvement]:
        return [i for i in self._improvements.values() if i.state == state]

    def find_similar(
        self, tool: str, type: ImprovementType | None = None, field: str | None = None
    ) -> list[Improvement]:
        return [
            i
            for i in self._improvements.values()
            if i.tool == tool
            and (type is None or i.type == type)
            and (field is None or i.field == field)
        ]

    def has_been_tried(self, improvement: Improvement) -> bool:
        signature = improvement.signature()
        return any(
            i.signature() == signature and i.id != improvement.id
            for i in self._improvements.values()
        )

    def statistics(self) -> ImprovementStatistics:
        improvements = list(self._improvements.values())
        attempted = [i for i in improvements if i.state != ImprovementState.PROPOSED]
        impacts = [i.impact for i in attempted if i.impact is not None]
        return ImprovementStatistics(
            attempted=len(attempted),
            accepted=sum(1 for i in improvements if i.state == ImprovementState.ACCEPTED),
            rejected=sum(1 for i in improvements if i.state == ImprovementState.REJECTED),
            pending=sum(1 for i in improvements if i.state == ImprovementState.APPLIED),
            average_impact=sum(impacts) / len(impacts) if impacts else 0.0,
            by_type=dict(Counter(i.type.value for i in improvements)),
        )

    def summary_markdown(self) -> str:
        stats = self.statistics()
        lines = [
            "# Improvement Summary",
            "",
            f"- Attempted: {stats.attempted}",
            f"- Accepted: {stats.accepted}",
            f"- Rejected: {stats.rejected}",
            f"- Pending: {stats.pending}",
            f"- Average impact: {stats.average_impact:+.1f} points",
            "",
        ]
        if not self._improvements:
            lines.append("No improvements were proposed.")
            return "\n".join(lines) + "\n"

        lines.extend(
            [
                "| Generation | Tool | Type | Field | State | Baseline | After | Commit |",
                "|---|---|---|---|---|---|---|---|",
            ]
        )
        for imp in self._improvements.values():
            baseline = f"{imp.baseline_score:.1f}" if imp.baseline_score is not None else "-"
            after = f"{imp.after_score:.1f}" if imp.after_score is not None else "-"
            commit = imp.commit_id[:7] if imp.commit_id else "-"
            lines.append(
                f"| {imp.generation} | {imp.tool} | {imp.type.value} | {imp.field} "
                f"| {imp.state.value} | {baseline} | {after} | {commit} |"
            )

        lines.append("")
        for imp in self._improvements.values():
            lines.extend(
                [
                    f"## {imp.id}: {imp.type.value} for {imp.tool}",
                    "",
                    f"**Rationale:** {imp.rationale}",
                    "",
                    "```",
                    imp.proposed,
                    "```",
                    "",
                ]
            )
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save_history(self, path: Path) -> None:
        atomic_write_json(
            path,
            {
                "improvements": [i.to_dict() for i in self._improvements.values()],
                "events": [e.to_dict() for e in self._events],
                "pending_id": self._pending_id,
            },
        )

    def load_history(self, path: Path) -> None:
        """Replace in-memory state with a saved history file, if it exists.

        Raises:
            ConfigurationError: If the file is not a readable history.
        """
        if not path.exists():
            return
        try:
            with open(path) as f:
                data: dict[str, Any] = json.load(f)
            improvements = [Improvement.from_dict(i) for i in data.get("improvements", [])]
            events = [ImprovementEvent.from_dict(e) for e in data.get("events", [])]
            pending_id = data.get("pending_id")
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Improvement history {path} is corrupt: {e}", code="CORRUPT_HISTORY"
            ) from e

        self._improvements = {i.id: i for i in improvements}
        self._events = events
        if not isinstance(pending_id, str) or pending_id not in self._improvements:
            pending_id = None
        self._pending_id = pending_id
        _logger.debug(
            "history_loaded",
            path=str(path),
            improvements=len(self._improvements),
            pending=self._pending_id,
        )
