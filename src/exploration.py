import enum
import importlib
import logging
from copy import copy
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pysmt.exceptions import SolverReturnedUnknownResultError
from pysmt.shortcuts import Solver

from llvm_parsing import Block, Function, Module, Project

logger = logging.getLogger(__name__)

'''
Interface between the analysis and the symbolic execution engine that
explores paths through a function.

The engine itself lives outside of this repository. Whatever implements it
exposes an ExecutionManager whose step() runs one path to completion, and a
State describing where the engine is: the path taken so far, the call stack,
the queue of backtrack points and the incremental solver whose level has to
stay in sync with that queue.

Engines are found at run time from a "module:callable" string (see
load_engine); the callable is invoked as factory(funcname, project, config).
'''

__all__ = [
    'Config', 'Position', 'Location', 'PathEntry', 'CallFrame', 'BacktrackPoint',
    'UnconstrainRequest', 'PathSnapshot', 'IncrementalSolver', 'State',
    'ExecutionManager', 'ExplorationError', 'UnreachableInstruction', 'SolverError',
    'LoopBoundExceeded', 'load_engine', 'path_length', 'pretty_path_source',
]


# ======
# Config
# ======

@dataclass
class Config:
    # maximum number of times a block may be entered on one path
    loop_bound: int = 50
    # seconds; None disables the per-query timeout
    solver_query_timeout: Optional[int] = 25
    null_pointer_checking: bool = False
    # calls to these end the path, as if they had aborted
    abort_functions: Tuple[str, ...] = (
        'kernel::debug::panic',
        'core::panicking::panic_fmt',
    )
    longest_path_optimizations: bool = True
    solver_name: str = 'z3'


# ===================
# Locations and paths
# ===================

class Position:
    """Where execution resumes within a block: at an instruction index, or at
    the terminator once every other instruction has run."""

    class Kind(enum.Enum):
        INSTR = enum.auto()
        TERMINATOR = enum.auto()

    def __init__(self, kind: 'Position.Kind', index: Optional[int] = None):
        self.kind = kind
        self.index = index

    @staticmethod
    def instr(index: int) -> 'Position':
        return Position(Position.Kind.INSTR, index)

    @staticmethod
    def terminator() -> 'Position':
        return Position(Position.Kind.TERMINATOR)

    @property
    def is_terminator(self) -> bool:
        return self.kind == Position.Kind.TERMINATOR

    def __eq__(self, other):
        return isinstance(other, Position) and (self.kind, self.index) == (other.kind, other.index)

    def __hash__(self):
        return hash((self.kind, self.index))

    def __repr__(self):
        return 'terminator' if self.is_terminator else 'instr {}'.format(self.index)


@dataclass(frozen=True)
class Location:
    module: Module
    func: Function
    bb: Block
    position: Position

    @property
    def module_name(self) -> str:
        return self.module.name

    @property
    def function_name(self) -> str:
        return self.func.name

    @property
    def basic_block_name(self) -> str:
        return self.bb.name

    def to_string_no_module(self) -> str:
        return '{{{}: {}, {}}}'.format(self.func.name, self.bb.name, self.position)

    def __str__(self):
        return '{{{}: {}: {}, {}}}'.format(self.module.name, self.func.name, self.bb.name,
                                          self.position)


@dataclass(frozen=True)
class PathEntry:
    location: Location


@dataclass(frozen=True)
class CallFrame:
    # location of the call instruction in the caller
    callsite: Location


@dataclass
class BacktrackPoint:
    loc: Location
    stack: List[CallFrame]
    # condition asserted when execution resumes here
    constraint: Any = None
    # anything else the engine needs to resume (assignments, memory, path prefix)
    payload: Any = None


@dataclass
class UnconstrainRequest:
    """The callee invoked from `callsite` runs with fully symbolic inputs the
    next time that call executes."""
    callsite: Location


def path_length(path) -> int:
    """Number of IR instructions executed along a path. Terminators are not
    counted."""
    length = 0
    for entry in path:
        loc = entry.location
        if not loc.position.is_terminator:
            length += len(loc.bb.instructions) - loc.position.index
    return length


def pretty_path_source(path) -> str:
    lines = []
    for entry in path:
        loc = entry.location
        if loc.position.is_terminator:
            insts = []
        else:
            insts = loc.bb.instructions[loc.position.index:]
        debug_locs = [inst.debug_loc for inst in insts if inst.debug_loc is not None]
        if debug_locs:
            for debug_loc in debug_locs:
                lines.append('  {} ({} {})'.format(debug_loc, loc.function_name,
                                                  loc.basic_block_name))
        else:
            lines.append('  (no source info) ({} {})'.format(loc.function_name,
                                                            loc.basic_block_name))
    return '\n'.join(lines)


def pretty_path_llvm_instructions(path) -> str:
    lines = []
    for entry in path:
        loc = entry.location
        lines.append('{}:'.format(loc.to_string_no_module()))
        if not loc.position.is_terminator:
            lines.extend('  ' + inst.text for inst in loc.bb.instructions[loc.position.index:])
        lines.append('  ' + loc.bb.terminator.text)
    return '\n'.join(lines)


@dataclass(frozen=True)
class PathSnapshot:
    """Copy of what the analysis needs from an engine state once a path has
    completed. Taking one has no effect on the engine."""
    path: Tuple[PathEntry, ...]
    cur_loc: Optional[Location]

    def get_path(self) -> Tuple[PathEntry, ...]:
        return self.path

    def pretty_path_source(self) -> str:
        return pretty_path_source(self.path)

    def pretty_path_llvm_instructions(self) -> str:
        return pretty_path_llvm_instructions(self.path)


# ======
# Solver
# ======

class IncrementalSolver:
    """pysmt incremental solver plus the number of backtracking levels pushed
    on it. The level must always equal the number of pending backtrack
    points."""

    def __init__(self, solver=None):
        self.solver = solver
        self.level = 0

    @staticmethod
    def create(config: Config) -> 'IncrementalSolver':
        options = dict()
        if config.solver_query_timeout is not None:
            options['timeout'] = config.solver_query_timeout * 1000
        return IncrementalSolver(Solver(name=config.solver_name, incremental=True,
                                        solver_options=options))

    def push(self, levels: int = 1):
        if self.solver is not None:
            self.solver.push(levels)
        self.level += levels

    def pop(self, levels: int = 1):
        assert levels <= self.level, "popping below solver level 0"
        if self.solver is not None:
            self.solver.pop(levels)
        self.level -= levels

    def add_assertion(self, formula):
        self.solver.add_assertion(formula)

    def solve(self) -> bool:
        try:
            return self.solver.solve()
        except SolverReturnedUnknownResultError as e:
            raise SolverError('solver query timed out', cause=e) from e


# ============
# Engine state
# ============

class State:
    def __init__(self, solver: Optional[IncrementalSolver] = None):
        self.solver = solver if solver is not None else IncrementalSolver()
        self.cur_loc: Optional[Location] = None
        self.stack: List[CallFrame] = list()
        self.backtrack_points: List[BacktrackPoint] = list()
        # point the current path was resumed from, if any
        self.last_backtrack_point: Optional[BacktrackPoint] = None
        self.fn_to_clear: Optional[UnconstrainRequest] = None
        self._path: List[PathEntry] = list()

    def get_path(self) -> List[PathEntry]:
        return self._path

    def record_path_entry(self, location: Location):
        self.cur_loc = location
        self._path.append(PathEntry(location))

    def take_unconstrain_request(self, callsite: Location) -> bool:
        """Called by the engine when it executes a call. True exactly once for
        the call site named by the pending request."""
        request = self.fn_to_clear
        if request is not None and request.callsite == callsite:
            self.fn_to_clear = None
            logger.debug('unconstraining call at %s', callsite.to_string_no_module())
            return True
        return False

    def save_backtrack_point(self, loc: Location, constraint=None, payload=None):
        self.solver.push(1)
        self.backtrack_points.append(BacktrackPoint(loc, copy(self.stack), constraint, payload))

    def snapshot(self) -> PathSnapshot:
        return PathSnapshot(tuple(self._path), self.cur_loc)

    def pretty_path_source(self) -> str:
        return pretty_path_source(self._path)

    def full_error_message_with_context(self, error: Exception) -> str:
        where = self.cur_loc.to_string_no_module() if self.cur_loc is not None else '<unknown>'
        return ('{}\nat {}\nPath to the error:\n{}'
                .format(error, where, pretty_path_llvm_instructions(self._path)))


class ExecutionManager:
    """Base class for exploration engines.

    step() explores one more path through the function and returns True once
    it completes, or False when every path has been explored. Errors on the
    current path are raised as ExplorationError subclasses; the engine state
    is left as it was at the point of failure.
    """

    def __init__(self, state: State):
        self.state = state

    def step(self) -> bool:
        raise NotImplementedError

    def mut_state(self) -> State:
        return self.state


def load_engine(spec: str) -> Callable[[str, Project, Config], ExecutionManager]:
    module_name, sep, attr = spec.partition(':')
    if not sep or not module_name or not attr:
        raise ValueError('engine must be given as "module:callable", got {!r}'.format(spec))
    module = importlib.import_module(module_name)
    return getattr(module, attr)


# =============
# Engine errors
# =============

class ExplorationError(Exception):
    pass


class UnreachableInstruction(ExplorationError):
    """The path reached an `unreachable` instruction. Such paths only exist
    when safety guarantees not visible in the IR are violated."""

    def __init__(self, message: str = 'reached an unreachable instruction'):
        super().__init__(message)


class SolverError(ExplorationError):
    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.cause, SolverReturnedUnknownResultError) or \
            'timed out' in str(self)


class LoopBoundExceeded(ExplorationError):
    def __init__(self, bound: int):
        super().__init__('loop bound of {} exceeded'.format(bound))
        self.bound = bound
