import glob
import os
import re
from typing import Dict, Iterator, List, Optional, Tuple

from llvmlite import binding as llvm

from pysmt.shortcuts import FreshSymbol
from pysmt.typing import BOOL, BVType


__all__ = ["Project", "Module", "Function", "Variable", "Block", "Instruction",
           "DebugLoc", "Type"]


'''
This file defines classes which are wrappers around functionality provided by
llvmlite, a package which allows us to work with the IR of the llvm compiler.

Project: the set of IR modules produced by a build. Functions are looked up by
name across every module of the project.

Module: keeps the list of function definitions in one bitcode/assembly file,
along with the debug metadata of that file.

Function: tracks the arguments of a function and its basic blocks. The
arguments can be replaced with fresh, fully unconstrained symbols, which is
what an exploration engine does when asked to run a callee without the
constraints inherited from its caller.

Block: tracks a block name (e.g. %start, %bb3), the list of non-terminator
instructions and the terminator. Path positions index into the non-terminator
list, so len(block.instructions) is the number of instructions that executing
the block from the top costs.

Instruction: tracks opcode, printed text, callee (for calls) and the debug
location attached with !dbg, if any.

DebugLoc: file/line/column resolved from !DILocation -> scope -> !DIFile.

Type: wrapper for llvm.TypeRef, used to determine the bit width and the pysmt
type of a variable.
'''


class DebugLoc:
    def __init__(self, line: int, col: int, filename: str, directory: str = ''):
        self.line = line
        self.col = col
        self.filename = filename
        self.directory = directory

    def __repr__(self):
        return '{}:{}:{}'.format(self.filename, self.line, self.col)

    def __eq__(self, other):
        return isinstance(other, DebugLoc) and \
            (self.line, self.col, self.filename, self.directory) == \
            (other.line, other.col, other.filename, other.directory)

    def __hash__(self):
        return hash((self.line, self.col, self.filename, self.directory))

    @property
    def path(self) -> str:
        if self.directory and not os.path.isabs(self.filename):
            return os.path.join(self.directory, self.filename)
        return self.filename


class DebugInfo:
    """Resolves `!dbg !N` references using the metadata printed at the end of a
    module. Only the nodes needed to get from a DILocation to its DIFile are
    interpreted."""

    node_re = re.compile(r'^!(\d+)\s*=\s*(?:distinct\s+)?!(\w+)\((.*)\)\s*$')
    field_re = re.compile(r'(\w+):\s*("(?:[^"\\]|\\.)*"|[^,]+)')

    def __init__(self, module_text: str):
        self.nodes = dict()
        for line in module_text.splitlines():
            match = DebugInfo.node_re.match(line.strip())
            if match is None:
                continue
            num, kind, body = match.groups()
            fields = dict((k, v.strip()) for k, v in DebugInfo.field_re.findall(body))
            self.nodes[num] = (kind, fields)

    @staticmethod
    def _ref(value: Optional[str]) -> Optional[str]:
        if value is None or not value.startswith('!'):
            return None
        return value[1:]

    @staticmethod
    def _unquote(value: str) -> str:
        return value[1:-1] if value.startswith('"') else value

    def _file_of(self, scope: Optional[str]) -> Tuple[str, str]:
        seen = set()
        while scope is not None and scope not in seen and scope in self.nodes:
            seen.add(scope)
            kind, fields = self.nodes[scope]
            if kind == 'DIFile':
                return (self._unquote(fields.get('filename', '""')),
                        self._unquote(fields.get('directory', '""')))
            if 'file' in fields:
                scope = self._ref(fields['file'])
            else:
                scope = self._ref(fields.get('scope'))
        return ('', '')

    def location(self, num: str) -> Optional[DebugLoc]:
        node = self.nodes.get(num)
        if node is None or node[0] != 'DILocation':
            return None
        fields = node[1]
        filename, directory = self._file_of(self._ref(fields.get('scope')))
        return DebugLoc(int(fields.get('line', '0')), int(fields.get('column', '0')),
                        filename, directory)


class Type:
    # 32-bit embedded targets (thumbv7em, riscv32imc)
    target_data = llvm.create_target_data('e-m:e-p:32:32-i64:64-v128:64:128-a:0:32-n32-S64')

    def __init__(self, llvm_type: llvm.TypeRef):
        self.llvm_type = llvm_type
        self.is_pointer = self.llvm_type.is_pointer
        # get bitwidth and pysmt_type
        match = re.match(r'i(\d+)$', str(llvm_type))
        if match is not None:
            self.bitwidth = int(match.group(1))
        else:
            self.bitwidth = Type.target_data.get_abi_size(llvm_type) * 8

        if self.bitwidth == 1:
            self.pysmt_type = BOOL
        else:
            self.pysmt_type = BVType(self.bitwidth)

    def __repr__(self) -> str:
        return '{{.llvm_type = {}, .is_pointer = {}, .bitwidth = {}, .pysmt_type = {}}}'.format(
            self.llvm_type, self.is_pointer, self.bitwidth, self.pysmt_type)


class Variable:
    def __init__(self, name: str, type: Type):
        self.name = name
        self.type = type

    def __repr__(self):
        return '{{.name = {}, .type = {}}}'.format(self.name, self.type)

    @staticmethod
    def from_arg(llvm_arg: llvm.ValueRef, index: int):
        # unnamed arguments are numbered from %0
        return Variable(llvm_arg.name or str(index), Type(llvm_arg.type))


class Instruction:
    dbg_re = re.compile(r'!dbg !(\d+)')

    def __init__(self, opcode: str, text: str, debug_loc: Optional[DebugLoc] = None,
                 callee: Optional[str] = None):
        self.opcode = opcode
        self.text = text
        self.debug_loc = debug_loc
        self.callee = callee

    def __repr__(self):
        return self.text

    @property
    def is_call(self) -> bool:
        return self.opcode == 'call'

    @staticmethod
    def from_llvm(llvm_inst: llvm.ValueRef, debug_info: DebugInfo):
        text = str(llvm_inst).strip()
        debug_loc = None
        match = Instruction.dbg_re.search(text)
        if match is not None:
            debug_loc = debug_info.location(match.group(1))
        callee = None
        if llvm_inst.opcode == 'call':
            # fn name is the last operand
            callee = list(llvm_inst.operands)[-1].name or None
        return Instruction(llvm_inst.opcode, text, debug_loc, callee)


class Block:
    label_re = re.compile(r'^([\w.$-]+):', re.MULTILINE)

    def __init__(self, name: str, instructions: List[Instruction], terminator: Instruction):
        self.name = name
        self.instructions = instructions
        self.terminator = terminator

    def __repr__(self):
        return self.name

    @property
    def returns(self) -> bool:
        return self.terminator.opcode == 'ret'

    def calls(self, name: str) -> List[Instruction]:
        """returns list of instructions calling a given function"""
        return [inst for inst in self.instructions if inst.is_call and inst.callee == name]

    @staticmethod
    def from_llvm(llvm_blk: llvm.ValueRef, debug_info: DebugInfo, entry_name: str):
        name = llvm_blk.name
        if not name:
            # unnamed blocks print their number as a label; the entry block prints none
            match = Block.label_re.search(str(llvm_blk))
            name = match.group(1) if match is not None else entry_name
        insts = [Instruction.from_llvm(llvm_inst, debug_info)
                 for llvm_inst in llvm_blk.instructions]
        assert len(insts) > 0, "block {} has no terminator".format(name)
        return Block('%' + name, insts[:-1], insts[-1])


class Function:
    def __init__(self, name: str, blocks: List[Block], arguments: List[Variable] = ()):
        self.name = name
        self.blocks = blocks
        self.arguments = list(arguments)
        self.module = None  # set by Module
        self._blkname_to_block = dict((blk.name, blk) for blk in blocks)

    def __repr__(self):
        return self.name

    def block(self, name: str) -> Block:
        return self._blkname_to_block[name]

    @property
    def entry(self) -> Block:
        return self.blocks[0]

    def fresh_argument_symbols(self) -> list:
        """Fully unconstrained replacements for every parameter of this function,
        in parameter order."""
        return [FreshSymbol(arg.type.pysmt_type,
                            template='{}_{}_unconstrained_%d'.format(self.name, arg.name))
                for arg in self.arguments]

    @staticmethod
    def from_llvm(llvm_fn: llvm.ValueRef, debug_info: DebugInfo):
        arguments = [Variable.from_arg(llvm_arg, i)
                     for i, llvm_arg in enumerate(llvm_fn.arguments)]
        entry_name = str(len(arguments))
        blocks = [Block.from_llvm(llvm_blk, debug_info, entry_name)
                  for llvm_blk in llvm_fn.blocks]
        return Function(llvm_fn.name, blocks, arguments)


class Module:
    def __init__(self, name: str, function_definitions: List[Function]):
        self.name = name
        self.function_definitions = function_definitions
        for fn in function_definitions:
            fn.module = self

    def __repr__(self):
        return self.name

    @staticmethod
    def from_llvm(llvm_module: llvm.ModuleRef, name: str):
        debug_info = DebugInfo(str(llvm_module))
        fns = [Function.from_llvm(llvm_fn, debug_info)
               for llvm_fn in llvm_module.functions if not llvm_fn.is_declaration]
        return Module(name, fns)

    @staticmethod
    def parse_file(path: str):
        if path.endswith('.bc'):
            with open(path, 'rb') as f:
                llvm_module = llvm.parse_bitcode(f.read())
        else:
            with open(path, 'r') as f:
                llvm_module = llvm.parse_assembly(f.read())
        llvm_module.verify()
        return Module.from_llvm(llvm_module, path)

    @staticmethod
    def parse_string(contents: str, name: str = '<string>'):
        llvm_module = llvm.parse_assembly(contents)
        llvm_module.verify()
        return Module.from_llvm(llvm_module, name)


class Project:
    def __init__(self, modules: List[Module]):
        self.modules = modules
        self._functions: Dict[str, Function] = dict()
        for module in modules:
            for fn in module.function_definitions:
                self._functions.setdefault(fn.name, fn)

    @staticmethod
    def from_paths(paths) -> 'Project':
        return Project([Module.parse_file(path) for path in paths])

    @staticmethod
    def from_bc_dir(bc_dir: str) -> 'Project':
        paths = sorted(glob.glob(os.path.join(bc_dir, '**', '*.bc'), recursive=True))
        return Project.from_paths(paths)

    def all_functions(self) -> Iterator[Tuple[Function, Module]]:
        for module in self.modules:
            for fn in module.function_definitions:
                yield (fn, module)

    def function(self, name: str) -> Optional[Function]:
        return self._functions.get(name)
