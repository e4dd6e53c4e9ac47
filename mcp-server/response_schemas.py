"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste.

PGN string format for move_list uses standard chess notation
(1.e4 e5 2.Nf3 ...) which is natural for the LLM agent to read.
"""

from __future__ import annotations

import os


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_game_state(state: dict) -> dict:
    """Minify a game state dict for MCP response.

    Removes fields the LLM doesn't need, compacts move_list to PGN string,
    replaces legal_moves list with count, drops the clock of untimed games.

    Args:
        state: Full game state dict (as produced by _build_game_state).

    Returns:
        Minified dict with reduced token footprint.
    """
    result = {}

    # Keep core fields as-is
    for key in (
        "game_id", "mode", "fen", "cursor", "last_move", "last_move_san",
        "status", "is_game_over", "result", "player_color", "difficulty",
        "eval_score",
    ):
        if key in state:
            result[key] = state[key]

    # Compact move_list: JSON array -> PGN string
    move_list = state.get("move_list", [])
    if isinstance(move_list, list):
        result["move_list"] = _moves_to_pgn_string(move_list)
    else:
        result["move_list"] = move_list

    # Replace legal_moves list with count
    legal_moves = state.get("legal_moves", [])
    if isinstance(legal_moves, list):
        result["legal_moves_count"] = len(legal_moves)
    else:
        result["legal_moves_count"] = 0

    # Only mention check and clocks when they apply
    if state.get("check_square") is not None:
        result["check_square"] = state["check_square"]
    if state.get("clock") is not None:
        result["clock"] = state["clock"]

    # Removed fields: board_display

    return result


def minify_evaluation(evaluation: dict) -> dict:
    """Minify an evaluation dict for MCP response.

    Truncates the principal variation to 5 moves and drops a null mate_in.

    Args:
        evaluation: Full evaluation dict.

    Returns:
        Minified dict.
    """
    result = {}

    for key in ("game_id", "fen", "eval_score", "depth"):
        if key in evaluation:
            result[key] = evaluation[key]

    pv = evaluation.get("pv", [])
    if isinstance(pv, list):
        result["pv"] = pv[:5]
    else:
        result["pv"] = pv

    if evaluation.get("mate_in") is not None:
        result["mate_in"] = evaluation["mate_in"]

    return result


def minify_analysis(analysis: dict) -> dict:
    """Minify an analysis response dict for MCP response.

    Keeps the three deepest lines, truncates moves to 5 per line and
    removes null mate_in keys.

    Args:
        analysis: Full analysis dict with fen, depth, lines (deepest first).

    Returns:
        Minified dict.
    """
    result = {
        "fen": analysis.get("fen"),
        "depth": analysis.get("depth"),
    }

    lines = analysis.get("lines", [])
    minified_lines = []
    for line in lines[:3]:
        ml = {
            "depth": line.get("depth"),
            "score_cp": line.get("score_cp"),
        }

        # Truncate moves to 5
        moves = line.get("moves", [])
        if isinstance(moves, list):
            ml["moves"] = moves[:5]
        else:
            ml["moves"] = moves

        # Only include mate_in when not None
        mate_in = line.get("mate_in")
        if mate_in is not None:
            ml["mate_in"] = mate_in

        minified_lines.append(ml)

    result["lines"] = minified_lines
    return result


# ---------------------------------------------------------------------------
# Helper: move list to PGN string
# ---------------------------------------------------------------------------


def _moves_to_pgn_string(moves: list[str]) -> str:
    """Convert a list of SAN moves to a PGN move string.

    E.g., ['e4', 'e5', 'Nf3', 'Nc6'] -> '1.e4 e5 2.Nf3 Nc6'

    Args:
        moves: List of SAN move strings.

    Returns:
        PGN-formatted move string.
    """
    if not moves:
        return ""

    parts = []
    for i, move in enumerate(moves):
        if i % 2 == 0:
            parts.append(f"{i // 2 + 1}.{move}")
        else:
            parts.append(move)

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

GAME_STATE_SCHEMA = {
    "game_id": str,
    "mode": str,
    "fen": str,
    "cursor": int,
    "last_move": (str, type(None)),
    "last_move_san": (str, type(None)),
    "status": str,
    "is_game_over": bool,
    "result": (str, type(None)),
    "player_color": str,
    "difficulty": str,
    "eval_score": (int, float, type(None)),
    "move_list": str,
    "legal_moves_count": int,
}

EVALUATION_SCHEMA = {
    "game_id": str,
    "fen": str,
    "eval_score": (int, float),
    "depth": int,
    "pv": list,
}

ANALYSIS_SCHEMA = {
    "fen": str,
    "depth": int,
    "lines": list,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when CHESSPLAY_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("CHESSPLAY_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors
