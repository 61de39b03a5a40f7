"""Command-line surface: argparse router and plain-text renderer."""

from testrepository.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIRenderer", "create_renderer"]
