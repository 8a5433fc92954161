"""Observability endpoints for the automation engine."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from merchant_api.api.dependencies.security import require_internal_secret
from merchant_api.observability.magic_rules import get_magic_rules_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_internal_secret)],
)


@router.get("/magic-rules", summary="Magic rules observability snapshot")
async def get_magic_rules_snapshot() -> dict[str, object]:
    return get_magic_rules_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted magic rules metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_magic_rules_store().snapshot()
    lines: list[str] = []

    for outcome, value in sorted(snapshot.evaluations.items()):
        lines.extend(
            _format_metric(
                "merchant_magic_rules_evaluations",
                "Order evaluations by outcome",
                value,
                {"outcome": outcome},
            )
        )
    for kind, value in sorted(snapshot.actions.items()):
        failed = kind.startswith("failed:")
        lines.extend(
            _format_metric(
                "merchant_magic_rules_actions",
                "Rule actions executed by kind",
                value,
                {"kind": kind.split(":", 1)[1] if failed else kind, "result": "failed" if failed else "ok"},
            )
        )
    lines.extend(
        _format_metric(
            "merchant_magic_rules_boosters_consumed",
            "Next-order boosters consumed",
            snapshot.boosters.get("consumed", 0),
        )
    )
    lines.extend(
        _format_metric(
            "merchant_magic_rules_booster_points",
            "Points awarded from next-order boosters",
            snapshot.boosters.get("points_awarded", 0),
        )
    )
    for reason, value in sorted(snapshot.rules.items()):
        lines.extend(
            _format_metric(
                "merchant_magic_rules_rule_events",
                "Rule lifecycle events",
                value,
                {"event": reason},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
