import logging
import time
from typing import Callable, Optional, Tuple

from errors import (AnalysisError, DoubleTimeout, NoPathsFound, SolverFailure,
                    UnrecoverableBacktrack)
from exploration import (Config, ExecutionManager, ExplorationError, Location, PathSnapshot,
                         SolverError, State, UnconstrainRequest, UnreachableInstruction,
                         path_length)
from llvm_parsing import Project

logger = logging.getLogger(__name__)

__all__ = ['RecoveryState', 'find_longest_path', 'recover_from_timeout']


class RecoveryState:
    """Solver timeout recovery for one analysis run. A recovery is in progress
    from the moment the restart point is re-queued until a path completes."""

    def __init__(self):
        self.callsite: Optional[Location] = None

    @property
    def in_progress(self) -> bool:
        return self.callsite is not None

    def begin(self, callsite: Location):
        self.callsite = callsite

    def complete(self):
        if self.callsite is not None:
            logger.info('recovered from solver timeout in call at %s',
                        self.callsite.to_string_no_module())
        self.callsite = None


def recover_from_timeout(state: State, recovery: RecoveryState):
    """Restart exploration from before the call whose constraints made the
    solver time out, with that call's callee unconstrained.

    1. Find the call that entered the function we timed out in.
    2. Next time that call executes, the callee runs with every parameter
       and all memory it touches unconstrained.
    3. Re-queue the backtrack point the failing path started from, so that
       the next step re-runs the path from there.
    """
    if not state.stack:
        raise UnrecoverableBacktrack(
            'Solver timed out at {} with an empty call stack: no call to unconstrain'
            .format(state.cur_loc.to_string_no_module() if state.cur_loc else '<unknown>'))
    callsite = state.stack[-1].callsite
    if recovery.in_progress:
        raise DoubleTimeout(
            'Double timeout: solver timed out again at {} while recovering from a timeout '
            'in the call at {}'.format(callsite.to_string_no_module(),
                                       recovery.callsite.to_string_no_module()))

    logger.warning('Location of timeout: %s', state.cur_loc.to_string_no_module()
                   if state.cur_loc else '<unknown>')
    state.fn_to_clear = UnconstrainRequest(callsite)
    logger.info('fn_to_clear: %s', callsite.to_string_no_module())

    restart_point = state.last_backtrack_point
    state.last_backtrack_point = None
    if restart_point is None:
        raise UnrecoverableBacktrack(
            'Solver timed out in the call at {} on the first path; no backtrack point to '
            'restart from'.format(callsite.to_string_no_module()))
    # restarting inside the same call frame would run it with the same constraints
    if restart_point.stack and restart_point.stack[-1].callsite == callsite:
        raise UnrecoverableBacktrack(
            'Restart point {} is inside the timed-out call at {}'
            .format(restart_point.loc.to_string_no_module(), callsite.to_string_no_module()))

    logger.info('restart point: %s', restart_point.loc.to_string_no_module())
    # solver level needs to be in sync with backtrack queue
    state.solver.push(1)
    state.backtrack_points.append(restart_point)
    recovery.begin(callsite)


def find_longest_path(funcname: str, project: Project, config: Config,
                      symex: Callable[[str, Project, Config], ExecutionManager],
                      time_results: bool = False) -> Tuple[int, PathSnapshot]:
    """Given a function name and project/configuration, returns the longest
    path (in llvm IR instructions) through that function, as well as a
    snapshot of the engine state at the end of that path. Of several paths
    of the longest length, the first one explored is returned."""
    em = symex(funcname, project, config)
    recovery = RecoveryState()
    longest_path_len = 0
    longest_path_state = None
    i = 0
    while True:
        start = time.monotonic()
        try:
            if not em.step():
                break
        except UnreachableInstruction:
            # Rust inserts unreachable instructions on paths that can only be
            # taken if its memory/type safety is violated. The IR alone cannot
            # rule those paths out, so they are dropped.
            i += 1
            continue
        except SolverError as e:
            if not e.is_timeout:
                logger.error('Solver error, not a timeout.')
                raise SolverFailure(em.state.full_error_message_with_context(e)) from e
            logger.warning('%s', e)
            logger.warning('Solver timeout detected! Attempting to loosen constraints.')
            recover_from_timeout(em.mut_state(), recovery)
            # the next call to step() resumes from the restart point
            continue
        except ExplorationError as e:
            logger.error('Call to step() #%d failed after %.1f seconds', i,
                         time.monotonic() - start)
            state = em.state
            if state.cur_loc is not None:
                logger.error('Failed while executing instruction in %s',
                             state.cur_loc.function_name)
            logger.error('Pretty path source:\n%s', state.pretty_path_source())
            raise AnalysisError(state.full_error_message_with_context(e)) from e

        if time_results:
            logger.info('Call to step() #%d completed in %.1f seconds', i,
                        time.monotonic() - start)
        i += 1
        recovery.complete()
        state = em.state
        length = path_length(state.get_path())
        if longest_path_state is None or length > longest_path_len:
            longest_path_len = length
            longest_path_state = state.snapshot()

    if longest_path_state is None:
        raise NoPathsFound(funcname)
    return (longest_path_len, longest_path_state)
