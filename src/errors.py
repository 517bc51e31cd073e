__all__ = ['AnalysisError', 'SolverFailure', 'DoubleTimeout', 'UnrecoverableBacktrack',
           'NoPathsFound', 'DisassemblyFormatError']


class AnalysisError(Exception):
    """Ends the analysis of one function. The message is what goes in that
    function's report file."""


class SolverFailure(AnalysisError):
    """The solver failed for a reason other than a timeout."""


class DoubleTimeout(AnalysisError):
    """The solver timed out again before recovery from a previous timeout
    completed."""


class UnrecoverableBacktrack(AnalysisError):
    """A solver timeout happened with no backtrack point outside the timed-out
    call frame to restart from."""


class NoPathsFound(AnalysisError):
    def __init__(self, funcname: str):
        super().__init__('No paths found through {}'.format(funcname))
        self.funcname = funcname


class DisassemblyFormatError(AnalysisError):
    def __init__(self, line_index: int, line: str, reason: str):
        super().__init__('line {}: {}: {!r}'.format(line_index + 1, reason, line))
        self.line_index = line_index
        self.line = line
