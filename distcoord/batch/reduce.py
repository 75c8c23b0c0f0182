"""
Reducers for batch outcomes.

Counts are summed and per-key breakdowns merged key-wise; derived
percentages are always recomputed from the merged numerator and
denominator, never averaged.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional

from distcoord.batch.executor import BatchResult

Breakdown = Dict[str, Dict[str, Any]]


def percentage(numerator: float, denominator: float) -> float:
    """numerator / denominator * 100, or 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / denominator * 100


def finalize_breakdown(breakdown: Breakdown) -> Breakdown:
    """Set percentage = defaulters / students * 100 on every key."""
    for data in breakdown.values():
        data["percentage"] = percentage(data.get("defaulters", 0), data.get("students", 0))
    return breakdown


def merge_breakdowns(a: Breakdown, b: Breakdown) -> Breakdown:
    """
    Merge two {key: {students, defaulters}} breakdowns key-wise.

    Returns:
        New breakdown with summed counts and recomputed percentages
    """
    merged: Breakdown = copy.deepcopy(a)

    for key, data in b.items():
        entry = merged.setdefault(key, {"students": 0, "defaulters": 0})
        entry["students"] = entry.get("students", 0) + data.get("students", 0)
        entry["defaulters"] = entry.get("defaulters", 0) + data.get("defaulters", 0)

    return finalize_breakdown(merged)


def reduce_defaulter_results(partials: Iterable[Dict[str, Any]], threshold: float) -> Dict[str, Any]:
    """
    Combine per-chunk defaulter analyses.

    Each partial carries total_students, defaulter_count,
    department_breakdown and subject_breakdown.
    """
    partials = list(partials)

    department: Breakdown = {}
    subject: Breakdown = {}
    total_students = 0
    total_defaulters = 0

    for partial in partials:
        total_students += partial.get("total_students", 0)
        total_defaulters += partial.get("defaulter_count", 0)
        department = merge_breakdowns(department, partial.get("department_breakdown", {}))
        subject = merge_breakdowns(subject, partial.get("subject_breakdown", {}))

    return {
        "type": "defaulter-analysis",
        "threshold": threshold,
        "chunks": len(partials),
        "total_students": total_students,
        "total_defaulters": total_defaulters,
        "overall_defaulter_percentage": percentage(total_defaulters, total_students),
        "department_breakdown": department,
        "subject_breakdown": subject,
    }


def reduce_department_summaries(partials: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Combine per-department attendance summaries.

    Each partial carries department_id, department_name, total_students,
    total_classes, present_count and absent_count. Partials for the same
    department are merged; averages come from the summed counts.
    """
    departments: Dict[str, Dict[str, Any]] = {}

    for partial in partials:
        dept_id = str(partial.get("department_id", "unknown"))
        entry = departments.setdefault(dept_id, {
            "department_id": dept_id,
            "department_name": partial.get("department_name", "Unknown"),
            "total_students": 0,
            "total_classes": 0,
            "present_count": 0,
            "absent_count": 0,
        })
        for key in ("total_students", "total_classes", "present_count", "absent_count"):
            entry[key] += partial.get(key, 0)

    results: List[Dict[str, Any]] = []
    for dept_id in sorted(departments):
        entry = departments[dept_id]
        entry["average_attendance"] = percentage(entry["present_count"], entry["total_classes"])
        results.append(entry)

    total_classes = sum(d["total_classes"] for d in results)
    present = sum(d["present_count"] for d in results)

    return {
        "type": "department",
        "results": results,
        "summary": {
            "total_departments": len(results),
            "total_students": sum(d["total_students"] for d in results),
            "total_classes": total_classes,
            "average_attendance": percentage(present, total_classes),
        },
    }


def combine_ingestion(result: BatchResult, max_error_details: Optional[int] = None) -> Dict[str, Any]:
    """Summarize a CSV or bulk ingestion batch."""
    errors = result.errors if max_error_details is None else result.errors[:max_error_details]

    return {
        "records_processed": result.processed,
        "errors": result.failed,
        "error_details": [
            {"index": e.index, "item": e.item, "error": e.error}
            for e in errors
        ],
        "parallel_chunks": result.chunk_count,
        "processing_time_ms": round(result.elapsed_ms, 2),
    }
