"""Final execution report assembled from the step log."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .context import ExecutionContext


class EvidenceItem(BaseModel):
    type: str
    description: str
    data: Any = None


class ExecutionReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(alias="executionId")
    test_case_id: Any = Field(default=None, alias="testCaseId")
    status: Literal["passed", "failed"]
    notes: str
    step_results: List[Dict[str, Any]] = Field(default_factory=list, alias="stepResults")
    evidence: List[EvidenceItem] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def _summary(context: ExecutionContext, passed: bool) -> str:
    total = context.total_steps
    executed = len(context.step_log)
    page = context.page_snapshot
    mode = (
        "simulated page data (target unreachable or fetching disabled)"
        if page is None or page.is_fallback
        else f"live page analysis of {page.url}"
    )
    if passed:
        text = (
            f"AI-assisted test execution of '{context.test_case.title}' completed "
            f"successfully. {executed} of {total} steps executed using {mode}."
        )
    else:
        failed = next((entry for entry in context.step_log if entry.failed), None)
        if failed is not None:
            text = (
                f"AI-assisted test execution of '{context.test_case.title}' failed at "
                f"step {failed.index + 1} ({failed.description}): {failed.output} "
                f"{executed} of {total} steps executed using {mode}."
            )
        else:
            text = (
                f"AI-assisted test execution of '{context.test_case.title}' did not "
                f"complete. {executed} of {total} steps executed using {mode}."
            )
    interventions = [entry for entry in context.step_log if entry.intervention_note]
    if interventions:
        text += f" {len(interventions)} step(s) completed with user intervention."
    if context.intervention_notes:
        text += " Operator notes: " + "; ".join(context.intervention_notes)
    return text


def build_report(context: ExecutionContext, *, final_screenshot: Optional[str] = None) -> ExecutionReport:
    """Build the report for a completed or failed execution.

    The report passes exactly when no logged step failed.
    """

    passed = not any(entry.failed for entry in context.step_log)

    evidence: List[EvidenceItem] = []
    if final_screenshot:
        evidence.append(
            EvidenceItem(
                type="screenshot",
                description="Final execution screenshot",
                data=final_screenshot,
            )
        )
    page = context.page_snapshot
    simulated = page is None or page.is_fallback
    evidence.append(
        EvidenceItem(
            type="http_analysis",
            description=(
                "Simulated page data (fallback snapshot)"
                if simulated
                else "Real HTTP request analysis"
            ),
            data={
                "pageUrl": page.url if page else context.target_url,
                "pageTitle": page.title if page else None,
                "contentLength": len(page.raw_content) if page else 0,
                "simulated": simulated,
            },
        )
    )

    return ExecutionReport(
        execution_id=context.execution_id,
        test_case_id=context.test_case.id,
        status="passed" if passed else "failed",
        notes=_summary(context, passed),
        step_results=[entry.to_dict() for entry in context.step_log],
        evidence=evidence,
    )
