"""opboard: production orders (OPs) tracked on a kanban board."""

__version__ = "0.1.0"
