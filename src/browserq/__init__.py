"""Queue-driven browser automation: jobs, workers, form filling and session transfer."""

__version__ = "0.1.0"
