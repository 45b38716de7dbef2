"""Offline upload queue replay."""

from assemblyqc.sync.offline_queue import OfflineQueue, PhotoStorage, QueueRunSummary

__all__ = ["OfflineQueue", "PhotoStorage", "QueueRunSummary"]
