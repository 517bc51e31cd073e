#!/usr/bin/env python3

import argparse
import logging
import os
import subprocess
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from disassembly import DisassemblyModel, get_disassembly
from errors import AnalysisError
from exploration import Config, ExecutionManager, load_engine
from instruction_counter import count_instructions
from llvm_parsing import Project
from longest_path import find_longest_path

logger = logging.getLogger(__name__)

KERNEL_WORK_TYPES = ('interrupts', 'commands', 'subscribes', 'allows', 'all')

RISCV_BOARDS = ('opentitan', 'arty_e21', 'hifive1')


# ==================
# Function selection
# ==================

def _is_driver_fn(name: str, what: str) -> bool:
    return what in name and 'Driver' in name and 'closure' not in name


def retrieve_functions_for_analysis(project: Project, kind: str) -> List[str]:
    """Names of the kernel functions of a given kind, matched on their
    (mangled) names."""
    names = [fn.name for fn, _ in project.all_functions()]
    if kind == 'interrupts':
        return [n for n in names if 'handle_interrupt' in n]
    elif kind == 'commands':
        return [n for n in names if _is_driver_fn(n, 'command') and 'command_complete' not in n]
    elif kind == 'allows':
        return [n for n in names if _is_driver_fn(n, 'allow')]
    elif kind == 'subscribes':
        return [n for n in names if _is_driver_fn(n, 'subscribe')]
    elif kind == 'all':
        return sum((retrieve_functions_for_analysis(project, k)
                    for k in ('commands', 'subscribes', 'allows', 'interrupts')), [])
    raise ValueError('unknown kind of kernel function: {}'.format(kind))


def find_function_by_fragments(project: Project, fragments: List[str]) -> Optional[str]:
    """First function whose name contains every fragment, or equals one of
    them exactly."""
    for fn, _ in project.all_functions():
        if any(fn.name.strip() == s.strip() for s in fragments):
            return fn.name
        if all(s in fn.name for s in fragments):
            return fn.name
    return None


# ===============
# Build and paths
# ===============

def target_triple(board_path: str) -> str:
    if any(board in board_path for board in RISCV_BOARDS):
        return 'riscv32imc-unknown-none-elf'
    return 'thumbv7em-none-eabi'


def build_board(board_path: str):
    logger.warning('Compiling %s, please wait...', board_path)
    subprocess.run(['make', '-C', board_path, 'clean'], check=True,
                   stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    proc = subprocess.run(['make', '-C', board_path], check=True,
                          stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                          universal_newlines=True)
    if 'Finished release' not in proc.stderr:
        raise RuntimeError('Build failed, output: {}'.format(proc.stderr))
    logger.warning('Finished building')


def save_git_history(tockpath: str, resultspath: str):
    """Save the state of the analyzed tree, for reproducing results later."""
    os.makedirs(resultspath, exist_ok=True)
    with open(os.path.join(resultspath, 'git_diff.txt'), 'w') as f:
        subprocess.run(['git', 'diff'], cwd=tockpath, stdout=f, check=True)
    log = subprocess.run(['git', 'log', '-n', '60'], cwd=tockpath, check=True,
                         stdout=subprocess.PIPE, universal_newlines=True)
    with open(os.path.join(resultspath, 'git_log.txt'), 'w') as f:
        f.write(log.stdout)


def demangle_names(names: List[str], cxxfilt: str = 'c++filt') -> Dict[str, str]:
    """Map each symbol name to its demangled form, in one run of binutils
    c++filt. Names are kept mangled when the tool is not installed."""
    if not names:
        return dict()
    try:
        proc = subprocess.run([cxxfilt], input='\n'.join(names) + '\n',
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                              universal_newlines=True, check=True)
    except FileNotFoundError:
        logger.warning('%s not found, report files are named after mangled symbols', cxxfilt)
        return {n: n for n in names}
    demangled = proc.stdout.splitlines()
    if len(demangled) != len(names):
        raise RuntimeError('{} returned {} names for {} symbols'
                           .format(cxxfilt, len(demangled), len(names)))
    return dict(zip(names, demangled))


def result_filename(resultspath: str, board_name: str, func_name: str) -> str:
    safe = func_name.replace(os.sep, '_')
    return os.path.join(resultspath, board_name, safe + '.txt')


# ========
# Analysis
# ========

def analyze_and_save_results(load_project: Callable[[], Project], board_name: str,
                             func_name: str, config: Config, resultspath: str,
                             disassembly: DisassemblyModel,
                             symex: Callable[[str, Project, Config], ExecutionManager],
                             time_results: bool = False,
                             report_name: Optional[str] = None) -> str:
    """Find the longest path through one function, write its report file and
    return the line that goes in the summary. Each call loads its own
    project, so calls can run in parallel. The report file is written
    whatever happens, named after `report_name` when one is given."""
    filename = result_filename(resultspath, board_name, report_name or func_name)
    logger.info('%s', filename)
    os.makedirs(os.path.dirname(filename), exist_ok=True)

    try:
        project = load_project()
        length, state = find_longest_path(func_name, project, config, symex, time_results)
        correlation = count_instructions(disassembly, state.get_path())
    except Exception as e:
        if isinstance(e, AnalysisError):
            message = str(e)
            logger.error('%s: %s', func_name, message)
        else:
            message = '{}: {}'.format(type(e).__name__, e)
            logger.exception('analysis of %s crashed', func_name)
        with open(filename, 'w') as f:
            f.write(message)
        return 'Fail: {}'.format(message)

    logger.info('%s: len: %d, asm: %d', func_name, length, correlation.instruction_count)
    with open(filename, 'w') as f:
        f.write('len: {}\n'.format(length))
        f.write('asm instructions: {}\n'.format(correlation.instruction_count))
        f.write(correlation.text)
        f.write('\n')
    return 'len: {}, asm: {}'.format(length, correlation.instruction_count)


def analyze_functions(functions: List[str], run: Callable[[str], str]) -> Dict[str, str]:
    """Run `run` on every function, one thread each."""
    results: Dict[str, str] = dict()
    lock = threading.Lock()

    def worker(func_name: str):
        try:
            res = run(func_name)
        except Exception as e:
            logger.exception('analysis of %s crashed', func_name)
            res = 'Fail: {}'.format(e)
        with lock:
            results[func_name] = res

    children = [threading.Thread(target=worker, args=(f,), name=f) for f in functions]
    for child in children:
        child.start()
    for child in children:
        child.join()
    return results


def write_summary(filename: str, results: Dict[str, str]):
    os.makedirs(os.path.dirname(filename) or '.', exist_ok=True)
    with open(filename, 'w') as f:
        for k in sorted(results):
            f.write('{}: {}\n'.format(k, results[k]))


# ===
# CLI
# ===

def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Longest IR path and machine instruction count of kernel functions')
    parser.add_argument('-v', '--verbose', action='count', default=0)
    parser.add_argument('--skip-compile', action='store_true',
                        help='do not rebuild the board before analyzing it')
    parser.add_argument('-t', '--timeout', type=int, default=25,
                        help='solver query timeout, in seconds')
    parser.add_argument('-b', '--board', default='imixmini', help='name of the board to analyze')
    parser.add_argument('-i', '--function-index', type=int, default=0,
                        help='analyze only the i-th selected function (1-based); 0 for all')
    parser.add_argument('-c', '--func-name-contains', action='append',
                        help='analyze the first function whose name contains every fragment '
                             '(repeatable); not compatible with --function-index')
    parser.add_argument('-f', '--functions', choices=KERNEL_WORK_TYPES, default='all',
                        type=str.lower, help='kind of functions to analyze')
    parser.add_argument('-p', '--tockpath', default='tock')
    parser.add_argument('-r', '--resultspath', default='results')
    parser.add_argument('-g', '--save-git-history', action='store_true')
    parser.add_argument('--time', action='store_true', dest='time_results')
    parser.add_argument('--engine', required=True,
                        help='exploration engine factory, as module:callable')
    parser.add_argument('--binary', help='linked binary to disassemble '
                                         '(default: the board binary under the target dir)')
    parser.add_argument('--objdump', default='arm-none-eabi-objdump')
    parser.add_argument('--disassembly', metavar='FILE',
                        help='read a saved `objdump -d -l` listing instead of running objdump')
    parser.add_argument('--cxxfilt', default='c++filt',
                        help='demangler used to name the report files')
    return parser


def select_functions(project: Project, args) -> List[str]:
    if args.func_name_contains:
        logger.info('func_name_contains: %s', args.func_name_contains)
        func_name = find_function_by_fragments(project, args.func_name_contains)
        if func_name is None:
            raise SystemExit('no function matches {}'.format(args.func_name_contains))
        logger.warning('Profiling %s', func_name)
        return [func_name]
    functions = retrieve_functions_for_analysis(project, args.functions)
    if args.function_index == 0:
        return functions
    return [functions[args.function_index - 1]]


def main(argv=None):
    args = make_parser().parse_args(argv)
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)]
    logging.basicConfig(level=level, format='%(asctime)s %(threadName)s %(name)s: %(message)s')

    board_path = os.path.join(args.tockpath, 'boards', args.board)
    if not args.skip_compile:
        build_board(board_path)
    if args.save_git_history:
        save_git_history(args.tockpath, args.resultspath)

    target_dir = os.path.join(args.tockpath, 'target', target_triple(board_path), 'release')
    bc_dir = os.path.join(target_dir, 'deps')
    binary = args.binary or os.path.join(target_dir, args.board)

    symex = load_engine(args.engine)
    config = Config(solver_query_timeout=args.timeout)
    if args.disassembly:
        disassembly = DisassemblyModel.from_file(args.disassembly)
    else:
        disassembly = DisassemblyModel(get_disassembly(binary, args.objdump))

    project = Project.from_bc_dir(bc_dir)
    logger.info('Project loaded')
    functions = select_functions(project, args)
    demangled = demangle_names(functions, args.cxxfilt)

    def run(func_name: str) -> str:
        return analyze_and_save_results(lambda: Project.from_bc_dir(bc_dir), args.board,
                                        func_name, config, args.resultspath, disassembly,
                                        symex, args.time_results, demangled[func_name])

    start = time.monotonic()
    results = analyze_functions(functions, run)
    elapsed = time.monotonic() - start

    summary = os.path.join(args.resultspath, args.board, 'summary.txt')
    logger.warning('%s', summary)
    write_summary(summary, results)

    if args.time_results:
        with open(os.path.join(args.resultspath, 'time.txt'), 'w') as f:
            f.write('Elapsed: {:.3f}s'.format(elapsed))
    return 0


if __name__ == '__main__':
    sys.exit(main())
