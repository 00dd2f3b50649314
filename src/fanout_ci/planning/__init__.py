"""Matrix declaration loading and deterministic job expansion."""

from fanout_ci.planning.matrix import expand, load_matrix, matrix_from_mapping

__all__ = ["expand", "load_matrix", "matrix_from_mapping"]
