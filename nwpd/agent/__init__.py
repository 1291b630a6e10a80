"""Agent runtime: job scheduling and process wiring."""

from .runtime import Agent
from .scheduler import JobScheduler, SystemClock
