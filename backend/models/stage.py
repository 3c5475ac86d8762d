from dataclasses import dataclass

from .job import Stage

TICK_UNITS = 0.5               # time-units advanced per scheduler tick


@dataclass(frozen=True)
class StageTemplate:
    name: str
    expected_duration: float   # simulated time-units

    def instantiate(self) -> Stage:
        return Stage(name=self.name, expected_duration=self.expected_duration)


PIPELINE_STAGES: tuple[StageTemplate, ...] = (
    StageTemplate("Ingest & Highlights Detection", 8),
    StageTemplate("Speech-to-Text & Subtitles", 10),
    StageTemplate("Video Editing", 12),
    StageTemplate("Quality Gates", 4),
    StageTemplate("Export", 6),
    StageTemplate("Captions & Hashtags", 4),
    StageTemplate("Scheduling Plan", 3),
)


def ticks_for(duration: float) -> int:
    """Number of scheduler ticks a stage of ``duration`` time-units takes."""
    return max(1, int(duration / TICK_UNITS))
