from prizedraws.database.models.major_draw import MajorDraw, MAJOR_DRAW_STATUSES
from prizedraws.database.models.major_draw_entry import MajorDrawEntry, MAJOR_DRAW_SOURCE_COLUMNS
from prizedraws.database.models.mini_draw import MiniDraw, MINI_DRAW_STATUSES
from prizedraws.database.models.mini_draw_entry import MiniDrawEntry, MINI_DRAW_SOURCE_COLUMNS
from prizedraws.database.models.entry_credit import EntryCredit

__all__ = [
    "MajorDraw", "MajorDrawEntry", "MiniDraw", "MiniDrawEntry", "EntryCredit",
    "MAJOR_DRAW_STATUSES", "MINI_DRAW_STATUSES", "MAJOR_DRAW_SOURCE_COLUMNS", "MINI_DRAW_SOURCE_COLUMNS",
]
