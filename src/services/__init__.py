"""Services package - render entry points."""

from services.render_service import (
    RenderService,
    StatusReport,
    check_status,
    open_cache,
    open_store,
    render_full,
    render_incremental,
)
from tiles.export import export_tiles

__all__ = [
    'RenderService',
    'StatusReport',
    'check_status',
    'export_tiles',
    'open_cache',
    'open_store',
    'render_full',
    'render_incremental',
]
