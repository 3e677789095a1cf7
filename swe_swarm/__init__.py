"""swe_swarm: wave-based orchestration of autonomous agent runs.

Drives many independent units of work (issues inside an epic, or epics inside
a project) through a pre-computed wave plan with bounded parallelism,
resumable on-disk state, and failure-aware retries.
"""

__version__ = "1.0.0"
