"""Export of every stored check result to a local file."""

from pathlib import Path

import structlog

from .connectors.base import ExportAPI

logger = structlog.get_logger(__name__)


async def export_results(api: ExportAPI, destination) -> Path:
    """Trigger the collaborator's export and write it to ``destination``.

    The file format is whatever the collaborator produces.
    """
    destination = Path(destination).expanduser()
    logger.info("export_requested", destination=str(destination))
    path = await api.export_results(destination)
    logger.info("export_completed", path=str(path), bytes=path.stat().st_size)
    return path
