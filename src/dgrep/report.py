"""Console rendering of a dispatch round."""

from __future__ import annotations

from typing import Sequence

from dgrep.models import DispatchSummary, NodeResult

WIDTH = 60

GREEN = "\033[32m"
RED = "\033[91m"
CYAN = "\033[36m"
BOLD = "\033[1m"
RESET = "\033[0m"


def format_results(
    results: Sequence[NodeResult],
    summary: DispatchSummary,
    elapsed: float,
    color: bool = True,
) -> str:
    """Render one box per target followed by the summary block."""

    def paint(code: str, text: str) -> str:
        return f"{code}{text}{RESET}" if color else text

    out: list[str] = []
    for result in results:
        out.append("")
        out.append(paint(CYAN, f"┌─ {result.hostname} (address: {result.target})"))
        out.append("├" + "─" * WIDTH)

        if result.error is not None:
            label = "ERROR" if result.reachable else "UNREACHABLE"
            out.append(f"│ {paint(RED, f'✗ {label}: {result.error}')}")
            for line in result.lines:
                out.append(f"│   {line}")
        elif not result.lines:
            out.append(f"│ {paint(GREEN, '✓ No matches found')}")
        else:
            lines = result.lines
            out.append(f"│ {paint(GREEN, f'✓ Found {len(lines)} matches:')}")
            out.append("│")
            for line in lines:
                out.append(f"│   {line}")

        out.append("└" + "─" * WIDTH)

    out.append("")
    out.append("═" * WIDTH)
    out.append(
        paint(
            BOLD,
            f"SUMMARY: {summary.succeeded} successful, {summary.failed} failed "
            f"out of {summary.total} machines",
        )
    )
    out.append(f"Reachable: {summary.reachable}, unreachable: {summary.unreachable}")
    if summary.total_lines > 0:
        out.append(f"Total matches found: {summary.total_lines} lines")
    out.append(f"Total latency: {elapsed:.3f}s")
    out.append("═" * WIDTH)

    return "\n".join(out)
