"""Multi-tool functional flow tests for MCP server.

Exercises realistic multi-tool sequences: a full game against the
engine, review and branching, undo chains, game-end paths, error
recovery and response size regression.

Run:
    pytest tests/test_mcp_flows.py -v          # fake engine
    pytest tests/test_mcp_flows.py -v --e2e    # adds real Stockfish flows
"""

from __future__ import annotations

import importlib.util
import json
import sys
from pathlib import Path

import chess
import pytest

# Add project root so imports resolve
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_PROJECT_ROOT))

# Import server module from hyphenated directory via importlib
_server_path = _PROJECT_ROOT / "mcp-server" / "server.py"
_spec = importlib.util.spec_from_file_location("mcp_server_flows_test", _server_path)
_server = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(_server)

from chessplay.bridge import EngineBridge

from conftest import FakeEngineTransport, fast_engine_settings

_games = _server._games

# Server tool functions
new_game = _server.new_game
get_board = _server.get_board
make_move = _server.make_move
engine_move = _server.engine_move
undo_move = _server.undo_move
goto_ply = _server.goto_ply
resign = _server.resign
offer_draw = _server.offer_draw
set_difficulty = _server.set_difficulty
get_hint = _server.get_hint
evaluate_position = _server.evaluate_position
analyze_position = _server.analyze_position
get_game_pgn = _server.get_game_pgn

sys.path.insert(0, str(_PROJECT_ROOT / "mcp-server"))
from response_schemas import GAME_STATE_SCHEMA, validate_response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _assert_minified(response: dict) -> None:
    """Assert response is a minified GameState."""
    assert "error" not in response, response.get("error")
    assert "board_display" not in response
    assert "legal_moves" not in response
    assert isinstance(response.get("legal_moves_count"), int)
    assert isinstance(response.get("move_list"), str)
    assert not validate_response(response, GAME_STATE_SCHEMA)


def _replay(fen: str, pgn_moves: str) -> chess.Board:
    """Rebuild a board from a minified move_list such as '1.e4 e5 2.Nf3'."""
    board = chess.Board(fen)
    for token in pgn_moves.split():
        san = token.split(".")[-1]
        board.push_san(san)
    return board


def _first_legal(game_id: str) -> str:
    board = chess.Board(get_board(game_id)["fen"])
    return next(iter(board.legal_moves)).uci()


@pytest.fixture(autouse=True)
def fake_engine(monkeypatch):
    """Bridges answer every search with the first legal move."""

    def _make_bridge():
        return EngineBridge(
            lambda: FakeEngineTransport(infos=("info depth 8 score cp 12 pv e2e4",)),
            fast_engine_settings(),
        )

    monkeypatch.setattr(_server, "_make_bridge", _make_bridge)
    yield
    for game in _games.values():
        game["bridge"].dispose()
    _games.clear()


# ---------------------------------------------------------------------------
# Full game lifecycle
# ---------------------------------------------------------------------------


class TestGameLifecycle:

    def test_player_and_engine_alternate(self):
        game_id = new_game(difficulty="maximum")["game_id"]
        for _ in range(4):
            response = make_move(game_id, _first_legal(game_id))
            _assert_minified(response)
            if response["is_game_over"]:
                break
            response = engine_move(game_id)
            _assert_minified(response)
            if response["is_game_over"]:
                break

        board = _replay(chess.STARTING_FEN, response["move_list"])
        assert board.fen(en_passant="fen") == response["fen"]
        assert response["cursor"] == len(board.move_stack) - 1

        pgn = get_game_pgn(game_id)
        assert pgn["result"] == ("*" if not response["is_game_over"] else response["result"])
        assert "[White \"Player\"]" in pgn["pgn"]

    def test_engine_opens_for_black_player(self):
        game_id = new_game(player_color="black", difficulty="maximum")["game_id"]
        response = engine_move(game_id)
        _assert_minified(response)
        assert response["player_color"] == "black"
        assert response["fen"].split()[1] == "b"
        assert response["move_list"].startswith("1.")

    def test_difficulty_change_mid_game(self):
        game_id = new_game(difficulty="beginner")["game_id"]
        make_move(game_id, "e4")
        set_difficulty(game_id, "maximum")
        response = engine_move(game_id)
        _assert_minified(response)
        assert response["difficulty"] == "maximum"
        assert response["cursor"] == 1

    def test_hint_then_play_it(self):
        game_id = new_game(mode="local")["game_id"]
        hint = get_hint(game_id)
        response = make_move(game_id, hint["move_san"])
        assert response["last_move"] == hint["move"]

    def test_evaluation_survives_in_board_until_undo(self):
        game_id = new_game(mode="local")["game_id"]
        make_move(game_id, "e4")
        evaluation = evaluate_position(game_id)
        assert get_board(game_id)["eval_score"] == evaluation["eval_score"]
        assert undo_move(game_id)["eval_score"] is None


# ---------------------------------------------------------------------------
# Review, branching and undo
# ---------------------------------------------------------------------------


class TestReviewFlow:

    def test_review_then_return_to_live_end(self):
        game_id = new_game(mode="local")["game_id"]
        for move in ("e4", "e5", "Nf3", "Nc6"):
            live = make_move(game_id, move)
        reviewed = goto_ply(game_id, 1)
        assert reviewed["fen"] != live["fen"]
        assert reviewed["move_list"] == live["move_list"]
        back = goto_ply(game_id, 3)
        assert back["fen"] == live["fen"]
        assert back["legal_moves_count"] == live["legal_moves_count"]

    def test_branch_rewrites_pgn(self):
        game_id = new_game(mode="local")["game_id"]
        for move in ("e4", "e5", "Nf3", "Nc6"):
            make_move(game_id, move)
        goto_ply(game_id, 1)
        make_move(game_id, "Bc4")
        pgn = get_game_pgn(game_id)["pgn"]
        assert "2. Bc4" in pgn
        assert "Nf3" not in pgn

    def test_undo_chain_to_start(self):
        game_id = new_game(difficulty="maximum")["game_id"]
        for _ in range(3):
            make_move(game_id, _first_legal(game_id))
            engine_move(game_id)
        for _ in range(3):
            response = undo_move(game_id)
            _assert_minified(response)
        assert response["fen"] == chess.STARTING_FEN
        assert "No moves" in undo_move(game_id)["error"]

    def test_branch_from_checkmated_game(self):
        game_id = new_game(mode="local")["game_id"]
        for move in ("f3", "e5", "g4", "Qh4#"):
            response = make_move(game_id, move)
        assert response["status"] == "checkmate"
        goto_ply(game_id, 2)
        response = make_move(game_id, "Qg5")
        _assert_minified(response)
        assert response["is_game_over"] is False
        assert response["move_list"] == "1.f3 e5 2.g4 Qg5"


# ---------------------------------------------------------------------------
# Game end
# ---------------------------------------------------------------------------


class TestGameEndFlow:

    def test_resign_blocks_further_play(self):
        game_id = new_game(difficulty="maximum")["game_id"]
        make_move(game_id, "e4")
        engine_move(game_id)
        final = resign(game_id)
        assert final["result"] == "0-1"
        assert "already over" in make_move(game_id, "d4")["error"]
        assert "already over" in engine_move(game_id)["error"]
        assert get_game_pgn(game_id)["result"] == "0-1"

    def test_stalemate(self):
        game_id = new_game(mode="local", starting_fen="7k/8/6Q1/8/8/8/8/K7 w - - 0 1")["game_id"]
        response = make_move(game_id, "Qf7")
        assert response["status"] == "stalemate"
        assert response["result"] == "1/2-1/2"

    def test_timed_game_keeps_increment(self):
        game_id = new_game(mode="local", initial_time_ms=60000, increment_ms=1000)["game_id"]
        response = make_move(game_id, "e4")
        assert response["clock"]["white_ms"] >= 60000
        assert response["clock"]["increment_ms"] == 1000

    def test_draw_then_new_game_is_independent(self):
        first = new_game(mode="local")["game_id"]
        offer_draw(first)
        second = new_game(mode="local")["game_id"]
        assert second != first
        response = make_move(second, "e4")
        assert response["status"] == "active"
        assert get_board(first)["result"] == "1/2-1/2"


# ---------------------------------------------------------------------------
# Error recovery
# ---------------------------------------------------------------------------


class TestErrorRecovery:

    def test_illegal_move_leaves_game_untouched(self):
        game_id = new_game(mode="local")["game_id"]
        before = make_move(game_id, "e4")
        assert "error" in make_move(game_id, "Ke3")
        assert "error" in make_move(game_id, "xyz")
        assert get_board(game_id) == before

    def test_bad_ply_leaves_cursor(self):
        game_id = new_game(mode="local")["game_id"]
        make_move(game_id, "e4")
        assert "error" in goto_ply(game_id, 5)
        assert get_board(game_id)["cursor"] == 0


# ---------------------------------------------------------------------------
# Response size regression
# ---------------------------------------------------------------------------


class TestResponseSize:

    def test_repetition_game_stays_small(self):
        game_id = new_game(mode="local")["game_id"]
        for move in ("Nf3", "Nf6", "Ng1", "Ng8") * 3:
            response = make_move(game_id, move)
            if response["is_game_over"]:
                break
        # Third occurrence of the starting position.
        assert response["status"] == "draw"
        assert response["cursor"] == 7
        assert len(json.dumps(response)) < 800

    def test_analysis_stays_small(self):
        response = analyze_position(chess.STARTING_FEN, depth=8)
        assert len(json.dumps(response)) < 600


# ---------------------------------------------------------------------------
# Real engine
# ---------------------------------------------------------------------------


@pytest.mark.e2e
class TestRealEngineFlow:

    @pytest.fixture(autouse=True)
    def real_engine(self, monkeypatch):
        monkeypatch.setattr(_server, "_make_bridge", lambda: EngineBridge(settings=_server._settings.engine))

    def test_game_against_stockfish(self):
        game_id = new_game(difficulty="maximum")["game_id"]
        make_move(game_id, "e4")
        response = engine_move(game_id)
        _assert_minified(response)
        assert response["cursor"] == 1

    def test_analyze_finds_mate(self):
        fen = "6k1/5ppp/8/8/8/8/8/R5K1 w - - 0 1"
        response = analyze_position(fen, depth=10)
        assert response["lines"][0]["moves"][0] == "a1a8"
        assert response["lines"][0]["mate_in"] == 1
