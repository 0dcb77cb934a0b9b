"""Cycle-level models of PIBUS bus components: bus controller, locks, RAM,
timers, terminal controller and multi-channel DMA."""

__version__ = "0.1.0"