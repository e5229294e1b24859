from prizedraws.database.repositories.major_draw_repository import MajorDrawRepository
from prizedraws.database.repositories.mini_draw_repository import MiniDrawRepository
from prizedraws.database.repositories.credit import find_credit, duplicate_result

__all__ = ["MajorDrawRepository", "MiniDrawRepository", "find_credit", "duplicate_result"]
