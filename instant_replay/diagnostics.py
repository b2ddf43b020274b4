"""
Environment self-check for ``--check``.

Looks up every element the replay graph needs without building anything.
Hardware codecs are informational; the rest must be present.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from .capabilities import BACKEND_PRIORITY, DECODERS, ENCODERS, REQUIRED_PLUGINS, Backend

LOG = logging.getLogger(__name__)

REQUIRED_ELEMENTS: Tuple[str, ...] = (
    "rtspsrc",
    "rtph264depay",
    "rtph264pay",
    "h264parse",
    "queue2",
    "filesink",
    "filesrc",
)

INSTALL_HINTS = {
    DECODERS[Backend.SOFTWARE]: "install gstreamer1.0-libav",
    ENCODERS[Backend.SOFTWARE]: "install gstreamer1.0-plugins-ugly",
}

PACKAGES_HINT = "sudo apt-get install gstreamer1.0-plugins-{base,good,bad,ugly} gstreamer1.0-libav"


class Registry(Protocol):
    def has_feature(self, name: str) -> bool: ...

    def has_plugin(self, name: str) -> bool: ...


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    required: bool = True
    hint: Optional[str] = None

    @property
    def label(self) -> str:
        if self.passed:
            return "PASSED"
        return "FAILED" if self.required else "WARNING"


@dataclass
class DiagnosticReport:
    results: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results if result.required)

    @property
    def failures(self) -> List[CheckResult]:
        return [result for result in self.results if result.required and not result.passed]

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


def run_checks(registry: Registry) -> DiagnosticReport:
    report = DiagnosticReport()

    for name in REQUIRED_ELEMENTS:
        report.results.append(CheckResult(f"element {name}", registry.has_feature(name)))

    for plugin in REQUIRED_PLUGINS:
        report.results.append(CheckResult(f"plugin {plugin}", registry.has_plugin(plugin)))

    for backend in BACKEND_PRIORITY:
        if backend is Backend.SOFTWARE:
            continue
        for element in (DECODERS[backend], ENCODERS[backend]):
            report.results.append(
                CheckResult(f"{backend.value} {element}", registry.has_feature(element), required=False)
            )

    for element in (DECODERS[Backend.SOFTWARE], ENCODERS[Backend.SOFTWARE]):
        report.results.append(
            CheckResult(f"software {element}", registry.has_feature(element), hint=INSTALL_HINTS[element])
        )

    for result in report.results:
        if result.passed:
            LOG.info("%s: %s", result.label, result.name)
        elif result.required:
            LOG.error("%s: %s%s", result.label, result.name, f" ({result.hint})" if result.hint else "")
        else:
            LOG.warning("%s: %s not available", result.label, result.name)

    if report.passed:
        LOG.info("All required checks passed")
    else:
        LOG.error("%d required check(s) failed. Install the missing plugins:", len(report.failures))
        LOG.error("  %s", PACKAGES_HINT)
    return report
