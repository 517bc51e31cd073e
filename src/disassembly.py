import enum
import logging
import string
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from errors import DisassemblyFormatError

logger = logging.getLogger(__name__)

'''
Model of a disassembly listing annotated with source locations, as printed by
`objdump -d -l`:

    00001000 <handle_interrupt>:
    handle_interrupt():
    /src/kernel/uart.rs:10
        1000:	b580      	push	{r7, lr}
        1002:	f000 f801 	bl	1008 <OUTLINED_FUNCTION_3>
    /src/kernel/uart.rs:12
        1006:	bd80      	pop	{r7, pc}

    00001008 <OUTLINED_FUNCTION_3>:
    OUTLINED_FUNCTION_3():
        1008:	...

Every line is classified into one LineKind. Each location marker becomes a
LookupInfo recording how many machine instructions follow it, so that IR
instructions carrying debug locations can be mapped onto machine code.
Calls into compiler-outlined functions are charged the outlined body as well.
'''

__all__ = ['LineKind', 'Line', 'LookupInfo', 'OutlinedFunction', 'DisassemblyModel',
           'classify', 'resolve_outlined_functions', 'get_disassembly']

OUTLINED_PREFIX = 'OUTLINED_FUNCTION'
OUTLINED_END = 'OUTLINED_FUNCTION_END'

# pseudo-instructions emitted for literal pools and data in text sections
LITERAL_DATA = ('.word', '.short', '.hword', '.byte', '.2byte', '.4byte', '.8byte',
                '.long', '.quad', '.ascii', '.asciz', '.string')


def _is_hex(s: str) -> bool:
    return len(s) > 0 and all(c in string.hexdigits for c in s)


def _is_raw_bytes(field: str) -> bool:
    return all(_is_hex(tok) and len(tok) % 2 == 0 for tok in field.split())


class LineKind(enum.Enum):
    BLANK = enum.auto()
    INSTRUCTION = enum.auto()       # "    1000:	b580      	push	{r7, lr}"
    LOCATION = enum.auto()          # "/src/kernel/uart.rs:10"
    FUNCTION_HEADER = enum.auto()   # "00001000 <handle_interrupt>:"
    FUNCTION_LABEL = enum.auto()    # "handle_interrupt():"
    OTHER = enum.auto()


class Line:
    def __init__(self, kind: LineKind, text: str, **fields):
        self.kind = kind
        self.text = text
        self.address: Optional[int] = fields.get('address')
        self.mnemonic: Optional[str] = fields.get('mnemonic')
        self.operands: str = fields.get('operands', '')
        self.name: Optional[str] = fields.get('name')
        self.source_file: Optional[str] = fields.get('source_file')
        self.source_line: Optional[int] = fields.get('source_line')

    def __repr__(self) -> str:
        return '{{.kind = {}, .text = {!r}}}'.format(self.kind, self.text)

    @property
    def is_literal_data(self) -> bool:
        return self.mnemonic in LITERAL_DATA

    @property
    def is_counted(self) -> bool:
        """Whether this line is a real machine instruction."""
        return self.kind == LineKind.INSTRUCTION and self.mnemonic is not None \
            and not self.is_literal_data

    @property
    def referenced_names(self) -> List[str]:
        """Symbols named in <...> by the operands, without any +offset."""
        names = []
        rest = self.operands
        while True:
            start = rest.find('<')
            end = rest.find('>', start + 1)
            if start < 0 or end < 0:
                return names
            names.append(rest[start + 1:end].split('+')[0])
            rest = rest[end + 1:]


def _classify_instruction(text: str) -> Optional[Line]:
    addr, sep, rest = text.strip().partition(':')
    if not sep or not _is_hex(addr):
        return None
    fields = [f.strip() for f in rest.split('\t') if f.strip()]
    if fields and _is_raw_bytes(fields[0]):
        fields = fields[1:]
    if not fields:
        # bytes continuing the previous instruction
        return Line(LineKind.INSTRUCTION, text, address=int(addr, 16))
    return Line(LineKind.INSTRUCTION, text, address=int(addr, 16),
                mnemonic=fields[0], operands='\t'.join(fields[1:]))


def _parse_location(text: str, index: int) -> Tuple[str, int]:
    marker = text.strip().split(' (discriminator')[0]
    parts = marker.split(':')
    if len(parts) != 2:
        raise DisassemblyFormatError(index, text, 'location marker is not <path>:<line>')
    try:
        return (parts[0], int(parts[1]))
    except ValueError:
        raise DisassemblyFormatError(index, text, 'location marker line is not a number')


def classify(text: str, index: int = 0) -> Line:
    """Classify one listing line. Raises DisassemblyFormatError for a
    malformed location marker."""
    stripped = text.rstrip()
    if not stripped:
        return Line(LineKind.BLANK, text)

    if text[0].isspace():
        line = _classify_instruction(stripped)
        return line if line is not None else Line(LineKind.OTHER, text)

    head, _, tail = stripped.partition(' ')
    if _is_hex(head) and tail.startswith('<') and tail.endswith('>:'):
        return Line(LineKind.FUNCTION_HEADER, text, address=int(head, 16), name=tail[1:-2])
    if stripped.endswith('():'):
        return Line(LineKind.FUNCTION_LABEL, text, name=stripped[:-3])
    if stripped.endswith(':') or 'file format' in stripped:
        # section banners, "Disassembly of section .text:"
        return Line(LineKind.OTHER, text)
    if ':' in stripped:
        source_file, source_line = _parse_location(stripped, index)
        return Line(LineKind.LOCATION, text, source_file=source_file, source_line=source_line)
    return Line(LineKind.OTHER, text)


@dataclass(frozen=True)
class LookupInfo:
    source_line: int
    # index of the location marker in DisassemblyModel.lines
    disassembly_line_index: int
    instruction_count: int
    instruction_text: str


@dataclass(frozen=True)
class OutlinedFunction:
    name: str
    instruction_count: int
    text: str


def resolve_outlined_functions(lines: List[Line]) -> Dict[str, OutlinedFunction]:
    """Find every compiler-outlined function, keyed by both its symbol and the
    alias printed on the line after the header. The first definition of a
    name is kept."""
    table: Dict[str, OutlinedFunction] = dict()
    for i, line in enumerate(lines):
        if line.kind != LineKind.FUNCTION_HEADER or not line.name.startswith(OUTLINED_PREFIX):
            continue
        names = [line.name]
        if i + 1 < len(lines) and lines[i + 1].kind == LineKind.FUNCTION_LABEL:
            names.append(lines[i + 1].name)

        count = 0
        text = [line.name + ':']
        j = i + 1
        while j < len(lines) and lines[j].kind != LineKind.BLANK:
            if lines[j].is_counted:
                count += 1
                text.append(lines[j].text)
            j += 1
        text.append(OUTLINED_END)

        outlined = OutlinedFunction(line.name, count, '\n'.join(text))
        for name in names:
            if name in table:
                logger.debug('outlined function %s defined twice, keeping the first', name)
                continue
            table[name] = outlined
    return table


def _build_source_index(lines: List[Line],
                        outlined: Dict[str, OutlinedFunction]) -> Dict[str, List[LookupInfo]]:
    source_index: Dict[str, List[LookupInfo]] = dict()
    for i, line in enumerate(lines):
        if line.kind != LineKind.LOCATION:
            continue
        count = 0
        text = []
        j = i + 1
        while j < len(lines) and lines[j].kind == LineKind.INSTRUCTION:
            inst = lines[j]
            j += 1
            if not inst.is_counted:
                continue
            count += 1
            text.append(inst.text)
            for name in inst.referenced_names:
                if name in outlined:
                    count += outlined[name].instruction_count
                    text.append(outlined[name].text)
                    break
        source_index.setdefault(line.source_file, []).append(
            LookupInfo(line.source_line, i, count, '\n'.join(text)))
    return source_index


class DisassemblyModel:
    """Built once per binary and only read afterwards, so one model can be
    shared by every function analysis."""

    def __init__(self, lines: List[str]):
        self.lines = lines
        parsed = [classify(text, i) for i, text in enumerate(lines)]
        self.outlined = resolve_outlined_functions(parsed)
        self.source_index = _build_source_index(parsed, self.outlined)
        logger.info('indexed %d disassembly lines: %d source files, %d outlined functions',
                    len(lines), len(self.source_index), len(self.outlined))

    @staticmethod
    def from_text(text: str) -> 'DisassemblyModel':
        return DisassemblyModel(text.splitlines())

    @staticmethod
    def from_file(path: str) -> 'DisassemblyModel':
        with open(path, 'r') as f:
            return DisassemblyModel.from_text(f.read())

    def lookup(self, source_file: str) -> Optional[List[LookupInfo]]:
        return self.source_index.get(source_file)


def get_disassembly(binary_path: str, objdump: str = 'arm-none-eabi-objdump') -> List[str]:
    """Disassemble a linked binary with source line annotations."""
    logger.info('disassembling %s', binary_path)
    proc = subprocess.run([objdump, '-d', '-l', binary_path],
                          stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                          universal_newlines=True, check=True)
    return proc.stdout.splitlines()
