"""
whispr: metadata-driven team insight agents.

Integration adapters submit privacy-scrubbed activity metadata; a batching
trigger schedules per-tenant analysis jobs; a multi-stage pipeline turns the
batch into whispers that are delivered back to the team.
"""

__version__ = "0.3.0"
