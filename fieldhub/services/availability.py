"""
Equipment availability validation.
Cross-checks diagram usage against the ledger. Problems are returned as issues, never raised.
"""
from typing import List, Mapping, Optional, Sequence

import structlog

from ..schemas.diagram import EquipmentUsage
from ..schemas.equipment import (
    ALLOCATABLE_STATUSES,
    BLOCKING_STATUSES,
    AvailabilityReport,
    EquipmentItemRecord,
    EquipmentStatus,
    EquipmentTypeResponse,
    IssueCategory,
    IssueType,
    SingleAvailability,
    ValidationIssue,
    ValidationSummary,
)
from .ledger import LedgerError, index_items
from .notifications import Severity, ToastChannel

logger = structlog.get_logger(__name__)


STATUS_MESSAGES = {
    EquipmentStatus.deployed: "already deployed to another job",
    EquipmentStatus.maintenance: "currently in maintenance",
    EquipmentStatus.red_tagged: "red-tagged and unavailable",
    EquipmentStatus.retired: "retired and cannot be used",
}


def _label(item: EquipmentItemRecord) -> str:
    return item.name or item.display_id


def _summarize(issues: List[ValidationIssue]) -> ValidationSummary:
    by_category = {category.value: 0 for category in IssueCategory}
    for issue in issues:
        by_category[issue.category.value] += 1
    return ValidationSummary(
        total=len(issues),
        errors=sum(1 for i in issues if i.type == IssueType.error),
        warnings=sum(1 for i in issues if i.type == IssueType.warning),
        by_category=by_category,
    )


def _available_quantity(items: Sequence[EquipmentItemRecord], type_id: str, location_id: str, at_location: bool) -> int:
    return sum(
        item.quantity for item in items
        if item.type_id == type_id
        and item.status == EquipmentStatus.available
        and (item.location_id == location_id) == at_location
    )


def validate_availability(
    usage: EquipmentUsage,
    target_location_id: str,
    items: Sequence[EquipmentItemRecord],
    equipment_types: Optional[Mapping[str, EquipmentTypeResponse]] = None,
    job_id: Optional[str] = None,
) -> AvailabilityReport:
    """
    Check every serial and every bulk demand in usage against a ledger snapshot.

    Rules run in order and all issues accumulate: missing serial (error), serial at
    another location (warning), serial in a non-allocatable status (warning for deployed
    or maintenance, error for red-tagged or retired), bulk shortfall (warning when other
    locations can cover it, error otherwise). Items deployed to job_id itself are not
    reported.
    """
    equipment_types = equipment_types or {}
    index = index_items(list(items))
    issues: List[ValidationIssue] = []

    for equipment_id, usage_info in usage.individual_equipment_usage.items():
        item = index.get(equipment_id)
        if item is None:
            issues.append(ValidationIssue(
                type=IssueType.error,
                category=IssueCategory.missing,
                message=f"Individual equipment {equipment_id} not found in inventory",
                equipment_id=equipment_id,
                suggestion="Remove from diagram or add to inventory",
            ))
            continue

        if item.location_id != target_location_id:
            issues.append(ValidationIssue(
                type=IssueType.warning,
                category=IssueCategory.location,
                message=f"{_label(item)} is at {item.location_id or 'unknown location'} but needed at {target_location_id}",
                equipment_id=equipment_id,
                suggestion="Transfer equipment or use local alternative",
            ))

        if item.status in ALLOCATABLE_STATUSES:
            continue
        if item.status == EquipmentStatus.deployed and job_id and item.job_id == job_id:
            continue
        issues.append(ValidationIssue(
            type=IssueType.error if item.status in BLOCKING_STATUSES else IssueType.warning,
            category=IssueCategory.status,
            message=f"{_label(item)} is {STATUS_MESSAGES.get(item.status, item.status.value)}",
            equipment_id=equipment_id,
            suggestion="Find alternative equipment" if item.status == EquipmentStatus.deployed else "Resolve status issue first",
        ))

    for type_id, usage_info in usage.bulk_equipment_usage.items():
        total_available = _available_quantity(items, type_id, target_location_id, at_location=True)
        if total_available >= usage_info.required_quantity:
            continue
        shortage = usage_info.required_quantity - total_available
        other_total = _available_quantity(items, type_id, target_location_id, at_location=False)
        equipment_type = equipment_types.get(type_id)
        type_name = equipment_type.name if equipment_type else type_id
        issues.append(ValidationIssue(
            type=IssueType.warning if other_total >= shortage else IssueType.error,
            category=IssueCategory.quantity,
            message=f"{type_name}: Need {usage_info.required_quantity}, only {total_available} available at location",
            suggestion=(
                f"Transfer {shortage} from other locations"
                if other_total >= shortage
                else f"Need to source additional {shortage} units"
            ),
        ))

    has_errors = any(issue.type == IssueType.error for issue in issues)
    return AvailabilityReport(
        is_valid=not has_errors,
        can_proceed=not has_errors,
        issues=issues,
        summary=_summarize(issues),
    )


def check_equipment_availability(item: Optional[EquipmentItemRecord]) -> SingleAvailability:
    if item is None:
        return SingleAvailability(available=False, reason="Equipment not found", severity="error")
    if item.status == EquipmentStatus.available:
        return SingleAvailability(available=True, reason="Available for deployment", severity="success")
    if item.status == EquipmentStatus.allocated:
        return SingleAvailability(available=True, reason="Already allocated but can be deployed", severity="info")
    return SingleAvailability(
        available=False,
        reason=STATUS_MESSAGES.get(item.status, f"Status: {item.status.value}").capitalize(),
        severity="error" if item.status in BLOCKING_STATUSES else "warning",
    )


def find_alternatives(
    items: Sequence[EquipmentItemRecord],
    type_id: str,
    exclude_location_id: Optional[str] = None,
) -> List[EquipmentItemRecord]:
    return [
        item for item in items
        if item.type_id == type_id
        and item.status == EquipmentStatus.available
        and (not exclude_location_id or item.location_id != exclude_location_id)
    ]


class AvailabilityValidator:
    def __init__(self, ledger, notifier: ToastChannel):
        self._ledger = ledger
        self._notifier = notifier

    async def validate(
        self,
        usage: EquipmentUsage,
        target_location_id: str,
        job_id: Optional[str] = None,
        notify: bool = True,
    ) -> AvailabilityReport:
        try:
            items = await self._ledger.fetch_all()
            equipment_types = await self._ledger.fetch_types()
        except LedgerError as e:
            logger.warning("availability_check_failed", job_id=job_id, error=str(e))
            issue = ValidationIssue(
                type=IssueType.error,
                category=IssueCategory.missing,
                message="Equipment inventory is unavailable",
                suggestion="Retry once the connection is restored",
            )
            report = AvailabilityReport(is_valid=False, can_proceed=False, issues=[issue], summary=_summarize([issue]))
            if notify:
                self._notifier.notify(Severity.error, "Could not validate equipment", job_id=job_id)
            return report

        report = validate_availability(usage, target_location_id, items, equipment_types, job_id=job_id)
        logger.info(
            "availability_validated",
            job_id=job_id,
            location_id=target_location_id,
            errors=report.summary.errors,
            warnings=report.summary.warnings,
        )
        if notify:
            if report.summary.errors:
                self._notifier.notify(
                    Severity.error,
                    f"{report.summary.errors} critical equipment issues found",
                    description="Please resolve errors before proceeding with job",
                    job_id=job_id,
                )
            elif report.summary.warnings:
                self._notifier.notify(
                    Severity.warning,
                    f"{report.summary.warnings} equipment warnings found",
                    description="Review warnings before proceeding",
                    job_id=job_id,
                )
            else:
                self._notifier.notify(
                    Severity.success,
                    "All equipment validated successfully",
                    description="Equipment is available and ready for deployment",
                    job_id=job_id,
                )
        return report
