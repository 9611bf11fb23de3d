"""Worker process side of a trial.

Run as ``python -m trialrunner.worker``; the runner's launcher supplies the
broker port, the trial id and the worker spec on the command line.
"""

from __future__ import annotations
