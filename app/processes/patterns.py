"""Allow-list of command-line patterns that identify render-job processes.

Only processes spawned transitively by the engine are found this way; PIDs
the supervisor sees at spawn time are tracked directly by the reaper.
Bump REAPER_PATTERNS_VERSION whenever the list changes.
"""

import re
from typing import Iterable, List, Sequence, Tuple

REAPER_PATTERNS_VERSION = 3

# Regular expressions, searched (not matched) against the full command line.
DEFAULT_PATTERNS: Tuple[str, ...] = (
    # Worker entry points
    r"GenerateLoopWorkerThread",
    r"RequestNewWorkerThread",
    r"RequestNewFrameBuilderThread",
    r"render[_-]worker",
    # Resume entry point
    r"ResumeProject",
    r"resume[_-]project",
    # Heavy encoders the engine launches
    r"(^|[/\\\s])ffmpeg(\.exe)?(\s|$)",
    r"(^|[/\\\s])ffprobe(\.exe)?(\s|$)",
)


def build_patterns(engine_module_name: str = "", extra: Iterable[str] = ()) -> List[str]:
    """Default allow-list plus the engine's module name and configured extras."""
    patterns: List[str] = list(DEFAULT_PATTERNS)
    if engine_module_name:
        patterns.append(re.escape(engine_module_name))
    for pattern in extra:
        if pattern and pattern not in patterns:
            patterns.append(pattern)
    return patterns


def compile_patterns(patterns: Sequence[str]) -> List["re.Pattern[str]"]:
    return [re.compile(p) for p in patterns]
