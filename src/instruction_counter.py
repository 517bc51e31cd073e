import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from disassembly import DisassemblyModel, LookupInfo
from llvm_parsing import Instruction

logger = logging.getLogger(__name__)

__all__ = ['Correlation', 'count_instructions', 'build_reentry_set', 'closest_lookup']

# how far the source line of an assembly anchor may be from the line reported
# for an IR instruction
MAX_LINES_AHEAD = 2
MAX_LINES_BEHIND = 5

ReentryKey = Tuple[str, str, int]


@dataclass
class Correlation:
    # distinct assembly runs counted, in listing order
    machine_trace: List[str]
    # the IR path, each instruction annotated with its correlation result
    annotated_ir: List[str]
    instruction_count: int

    @property
    def text(self) -> str:
        return '\n'.join(['==== machine instructions ===='] + self.machine_trace +
                         ['==== annotated IR ===='] + self.annotated_ir)


def build_reentry_set(path) -> Set[ReentryKey]:
    """Calls after which this path leaves the block. An entry resuming a block
    part-way through (or at its terminator) was returned to from a call at
    the previous instruction."""
    reentry = set()
    for entry in path:
        loc = entry.location
        if loc.position.is_terminator:
            if loc.bb.instructions:
                reentry.add((loc.function_name, loc.basic_block_name,
                             len(loc.bb.instructions) - 1))
        elif loc.position.index != 0:
            reentry.add((loc.function_name, loc.basic_block_name, loc.position.index - 1))
    return reentry


def _distance(candidate_line: int, ir_line: int) -> Optional[int]:
    if candidate_line > ir_line:
        d = candidate_line - ir_line
        return d if d <= MAX_LINES_AHEAD else None
    d = ir_line - candidate_line
    return d if d <= MAX_LINES_BEHIND else None


def closest_lookup(candidates: List[LookupInfo], ir_line: int) -> Optional[LookupInfo]:
    # entries are in listing order, not source order
    best = None
    best_key = None
    for candidate in candidates:
        d = _distance(candidate.source_line, ir_line)
        if d is None:
            continue
        key = (d, candidate.disassembly_line_index, candidate.instruction_count)
        if best_key is None or key < best_key:
            best, best_key = candidate, key
    return best


class _Counter:
    def __init__(self, disassembly: DisassemblyModel):
        self.disassembly = disassembly
        self.seen: Dict[int, LookupInfo] = dict()
        self.num_instrs = 0

    def _candidates(self, inst: Instruction) -> Optional[List[LookupInfo]]:
        candidates = self.disassembly.lookup(inst.debug_loc.filename)
        if candidates is None and inst.debug_loc.directory:
            candidates = self.disassembly.lookup(inst.debug_loc.path)
        return candidates

    def annotate(self, inst: Instruction) -> str:
        debug_loc = inst.debug_loc
        if debug_loc is None or debug_loc.line == 0:
            return '{}  ; no debug location'.format(inst.text)

        candidates = self._candidates(inst)
        if candidates is None:
            return '{}  ; lookup failed: {}'.format(inst.text, debug_loc.filename)

        info = closest_lookup(candidates, debug_loc.line)
        if info is None:
            return '{}  ; threshold exceeded: {}:{}'.format(inst.text, debug_loc.filename,
                                                           debug_loc.line)

        if info.disassembly_line_index not in self.seen:
            self.seen[info.disassembly_line_index] = info
            self.num_instrs += info.instruction_count
        return '{}  ; {}:{} -> line {} ({} instrs)'.format(
            inst.text, debug_loc.filename, info.source_line,
            info.disassembly_line_index + 1, info.instruction_count)


def count_instructions(disassembly: DisassemblyModel, path) -> Correlation:
    """Count the number of machine instructions corresponding to a path, each
    assembly run at most once."""
    reentry = build_reentry_set(path)
    counter = _Counter(disassembly)
    annotated = []

    for entry in path:
        loc = entry.location
        bb = loc.bb
        # log meta-information about the current bb
        annotated.append('module: {} | func: {} | bb: {}'.format(
            loc.module_name, loc.function_name, bb.name))

        if loc.position.is_terminator:
            annotated.append(bb.terminator.text)
            continue

        left_block = False
        for idx in range(loc.position.index, len(bb.instructions)):
            inst = bb.instructions[idx]
            annotated.append(counter.annotate(inst))
            if inst.is_call and (loc.function_name, bb.name, idx) in reentry:
                left_block = True
                break
        if not left_block:
            annotated.append(bb.terminator.text)

    machine_trace = [counter.seen[i].instruction_text for i in sorted(counter.seen)]
    logger.debug('path correlates to %d machine instructions in %d runs',
                 counter.num_instrs, len(machine_trace))
    return Correlation(machine_trace, annotated, counter.num_instrs)
