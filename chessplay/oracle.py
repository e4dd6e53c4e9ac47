"""Move Legality Oracle backed by python-chess.

The oracle is stateless: every call rebuilds a chess.Board from the
Position it is given, so no rules object is shared between sessions or
reused across calls.
"""

from __future__ import annotations

from collections.abc import Iterable

import chess

from chessplay.errors import IllegalMoveError
from chessplay.models import GameStatus, Move, Position, Side

_PROMOTION_PIECES = {"q", "r", "b", "n"}


def _board(position: Position) -> chess.Board:
    return chess.Board(position.fen)


def _serialize(board: chess.Board) -> Position:
    # Keep the en-passant target after every double push, as FEN defines it.
    return Position(board.fen(en_passant="fen"))


def _to_chess_move(move: Move) -> chess.Move:
    try:
        return chess.Move.from_uci(move.uci())
    except chess.InvalidMoveError as exc:
        raise IllegalMoveError(move.uci(), "malformed move") from exc


def _from_chess_move(move: chess.Move) -> Move:
    promotion = chess.piece_symbol(move.promotion) if move.promotion else None
    return Move(
        chess.square_name(move.from_square),
        chess.square_name(move.to_square),
        promotion,
    )


class MoveOracle:
    """Legal-move, check and game-end verdicts for a Position."""

    def legal_moves(self, position: Position, square: str | None = None) -> list[Move]:
        """List legal moves, optionally filtered by source square.

        Args:
            position: Position to query.
            square: Optional source square name (e.g. 'e2').

        Returns:
            Legal moves in python-chess generation order.

        Raises:
            ValueError: If square is not a valid square name.
        """
        board = _board(position)
        moves = board.legal_moves
        if square is None:
            return [_from_chess_move(m) for m in moves]
        sq = chess.parse_square(square)
        return [_from_chess_move(m) for m in moves if m.from_square == sq]

    def destinations(self, position: Position, square: str) -> frozenset[str]:
        """Destination squares for the piece on square.

        Empty when the square is empty, holds a piece of the side not to
        move, or is not a valid square name.
        """
        try:
            moves = self.legal_moves(position, square)
        except ValueError:
            return frozenset()
        return frozenset(m.to_square for m in moves)

    def is_legal(self, position: Position, move: Move) -> bool:
        try:
            return _to_chess_move(move) in _board(position).legal_moves
        except IllegalMoveError:
            return False

    def apply(self, position: Position, move: Move) -> tuple[Position, str]:
        """Play a move and return the resulting position with its SAN.

        Args:
            position: Position before the move.
            move: Move to play.

        Returns:
            Tuple of (resulting Position, SAN of the move).

        Raises:
            IllegalMoveError: If the move is malformed or not legal here.
        """
        if move.promotion is not None and move.promotion not in _PROMOTION_PIECES:
            raise IllegalMoveError(move.uci(), "invalid promotion piece")
        board = _board(position)
        chess_move = _to_chess_move(move)
        if chess_move not in board.legal_moves:
            if (
                move.promotion is None
                and chess.Move(chess_move.from_square, chess_move.to_square, chess.QUEEN)
                in board.legal_moves
            ):
                raise IllegalMoveError(move.uci(), "promotion piece required")
            raise IllegalMoveError(move.uci())
        san = board.san(chess_move)
        board.push(chess_move)
        return _serialize(board), san

    def parse_move(self, position: Position, text: str) -> Move:
        """Parse SAN ('Nf3') or long algebraic ('g1f3') into a legal Move.

        Raises:
            IllegalMoveError: If the text names no legal move.
        """
        board = _board(position)
        try:
            return _from_chess_move(board.parse_san(text))
        except ValueError:
            pass
        try:
            chess_move = chess.Move.from_uci(text)
        except chess.InvalidMoveError as exc:
            raise IllegalMoveError(text, "unparseable move") from exc
        if chess_move not in board.legal_moves:
            raise IllegalMoveError(text)
        return _from_chess_move(chess_move)

    def is_in_check(self, position: Position) -> bool:
        return _board(position).is_check()

    def king_square(self, position: Position, side: Side) -> str | None:
        color = chess.WHITE if side is Side.WHITE else chess.BLACK
        square = _board(position).king(color)
        return chess.square_name(square) if square is not None else None

    def status(
        self,
        position: Position,
        line: Iterable[Position] = (),
    ) -> GameStatus:
        """Board verdict for a position.

        Args:
            position: Position to judge.
            line: Earlier positions of the same game, oldest first, used
                for threefold repetition.

        Returns:
            CHECKMATE, STALEMATE, DRAW, CHECK or ACTIVE.
        """
        board = _board(position)
        if board.is_checkmate():
            return GameStatus.CHECKMATE
        if board.is_stalemate():
            return GameStatus.STALEMATE
        if board.is_insufficient_material() or board.halfmove_clock >= 100:
            return GameStatus.DRAW
        repetitions = 1 + sum(1 for earlier in line if earlier.key == position.key)
        if repetitions >= 3:
            return GameStatus.DRAW
        if board.is_check():
            return GameStatus.CHECK
        return GameStatus.ACTIVE

    def is_valid(self, position: Position) -> bool:
        try:
            return _board(position).is_valid()
        except ValueError:
            return False
