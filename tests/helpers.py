"""Builders for IR models and scripted exploration engines used across the
tests. Nothing here needs llvmlite to parse anything."""

from exploration import (BacktrackPoint, CallFrame, ExecutionManager, Location, PathEntry,
                         Position, State)
from llvm_parsing import Block, DebugLoc, Function, Instruction, Module


def make_block(name, n, calls=(), lines=None, filename='src.c', terminator='ret void'):
    """Block of `n` instructions. Indices in `calls` are call instructions;
    `lines[i]` is the debug line of instruction i (None for no location)."""
    insts = []
    for i in range(n):
        debug_loc = None
        if lines is not None and lines[i] is not None:
            debug_loc = DebugLoc(lines[i], 1, filename)
        if i in calls:
            insts.append(Instruction('call', 'call void @f{}()'.format(i), debug_loc,
                                     callee='f{}'.format(i)))
        else:
            insts.append(Instruction('add', '%v{} = add i32 0, {}'.format(i, i), debug_loc))
    term = Instruction(terminator.split()[0], terminator)
    return Block(name, insts, term)


def make_function(name, *blocks, module_name='kernel.ll'):
    fn = Function(name, list(blocks))
    Module(module_name, [fn])
    return fn


def loc(fn, bb_name, index=0):
    bb = fn.block(bb_name)
    position = Position.terminator() if index is None else Position.instr(index)
    return Location(fn.module, fn, bb, position)


def entry(fn, bb_name, index=0):
    return PathEntry(loc(fn, bb_name, index))


def completes(*entries):
    """Engine outcome: a path made of `entries` completes."""
    def outcome(state):
        state.get_path().clear()
        for e in entries:
            state.record_path_entry(e.location)
        return True
    return outcome


def fails(error, stack=(), restart_point=None, at=None):
    """Engine outcome: the current path fails with `error`, with the given
    call stack and the backtrack point the path was resumed from."""
    def outcome(state):
        state.stack = list(stack)
        state.last_backtrack_point = restart_point
        if at is not None:
            state.record_path_entry(at)
        raise error
    return outcome


def resumes():
    """Engine outcome: resume from the most recent backtrack point, the way an
    engine does at the start of a step."""
    def outcome(state):
        point = state.backtrack_points.pop()
        state.solver.pop(1)
        state.stack = list(point.stack)
        state.last_backtrack_point = point
        return None
    return outcome


class ScriptedEngine(ExecutionManager):
    """Plays back a list of outcomes, one per call to step(). Outcomes
    returning None are preparation steps and are chained with the next one."""

    def __init__(self, outcomes):
        super().__init__(State())
        self.outcomes = list(outcomes)
        self.calls = 0

    def step(self):
        self.calls += 1
        while self.outcomes:
            res = self.outcomes.pop(0)(self.state)
            if res is not None:
                return res
        return False

    def factory(self):
        def symex(funcname, project, config):
            return self
        return symex


def frame(fn, bb_name, index):
    return CallFrame(loc(fn, bb_name, index))


def backtrack_point(fn, bb_name, index=0, stack=()):
    return BacktrackPoint(loc(fn, bb_name, index), list(stack))
