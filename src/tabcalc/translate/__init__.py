"""Translation between models and spreadsheet sheets."""

from tabcalc.translate.inbound import import_sheets
from tabcalc.translate.outbound import DEFAULT_SCALARS_SHEET, export_model
from tabcalc.translate.sheets import CellAddress, CellFormula, Sheet, column_index, column_letter

__all__ = [
    "DEFAULT_SCALARS_SHEET",
    "CellAddress",
    "CellFormula",
    "Sheet",
    "column_index",
    "column_letter",
    "export_model",
    "import_sheets",
]
