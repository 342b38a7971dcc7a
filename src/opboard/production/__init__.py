"""Production package.

Command layer over the application state plus the read-side projections
(kanban cards, order report, dashboard figures).
"""

from opboard.production.kanban import Card, Lane, build_cards, filter_cards, group_cards, lanes_for, move_card
from opboard.production.reports import OrderReport, build_order_report, dashboard_figures, report_to_excel_bytes
from opboard.production.service import ProductionService

__all__ = [
    "Card",
    "Lane",
    "OrderReport",
    "ProductionService",
    "build_cards",
    "build_order_report",
    "dashboard_figures",
    "filter_cards",
    "group_cards",
    "lanes_for",
    "move_card",
    "report_to_excel_bytes",
]
