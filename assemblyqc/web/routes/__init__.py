"""AssemblyQC web route modules.

Each module exports a ``router`` (``APIRouter``) that ``assemblyqc.web.app``
includes. Shared dependencies live in ``assemblyqc.web.dependencies`` and
request/response bodies in ``assemblyqc.web.models``.
"""

from assemblyqc.web.routes import audit, calibration, elements, review

__all__ = ["audit", "calibration", "elements", "review"]
