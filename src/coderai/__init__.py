"""CoderAI: turn change requests into reviewed, safely applied repository edits."""

__version__ = "0.1.0"
