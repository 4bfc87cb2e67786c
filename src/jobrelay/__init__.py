"""jobrelay - orchestration of remote browser-automation workers.

Launches one isolated worker per job, relays worker progress to live
viewers, and fails jobs whose workers die without reporting.
"""

__version__ = "0.1.0"
