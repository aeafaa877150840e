"""pagedpreview: live preview server for paged Markdown documents."""

__version__ = "0.4.0"
