import pytest

from disassembly import (DisassemblyModel, LineKind, classify, resolve_outlined_functions)
from errors import DisassemblyFormatError


LISTING = """\

kernel.elf:     file format elf32-littlearm


Disassembly of section .text:

00001000 <handle_interrupt>:
handle_interrupt():
src.c:10
    1000:\tf000 f802 \tbl\t1008 <OUTLINED_FUNCTION_3>
src.c:12
    1004:\t4801      \tldr\tr0, [pc, #4]\t; (100c <handle_interrupt+0xc>)
    1006:\t6800      \tldr\tr0, [r0, #0]
    1008:\t20000000 \t.word\t0x20000000
/src/kernel/uart.rs:40 (discriminator 2)
    100c:\tbd80      \tpop\t{r7, pc}

00001010 <OUTLINED_FUNCTION_3>:
_ZN6kernel17OUTLINED_FUNCTION3E():
    1010:\tb580      \tpush\t{r7, lr}
    1012:\t466f      \tmov\tr7, sp
    1014:\t2000      \tmovs\tr0, #0
    1016:\t00000000 \t.word\t0x00000000
    101a:\tbd80      \tpop\t{r7, pc}

00001020 <OUTLINED_FUNCTION_3>:
OUTLINED_FUNCTION_3():
    1020:\tbf00      \tnop

00001030 <uses_alias>:
uses_alias():
src.c:30
    1030:\tf7ff fff0 \tbl\t1010 <_ZN6kernel17OUTLINED_FUNCTION3E>
    1034:\t4770      \tbx\tlr
src.c:31
"""


@pytest.fixture
def model():
    return DisassemblyModel.from_text(LISTING)


class TestClassify:
    def test_instruction_with_raw_bytes(self):
        line = classify('    1004:\t4801      \tldr\tr0, [pc, #4]\t; (100c <foo+0xc>)')
        assert line.kind == LineKind.INSTRUCTION
        assert line.address == 0x1004
        assert line.mnemonic == 'ldr'
        assert line.referenced_names == ['foo']
        assert line.is_counted

    def test_literal_data_is_not_counted(self):
        line = classify('    1008:\t20000000 \t.word\t0x20000000')
        assert line.kind == LineKind.INSTRUCTION
        assert line.is_literal_data
        assert not line.is_counted

    def test_other_kinds(self):
        assert classify('').kind == LineKind.BLANK
        assert classify('00001000 <handle_interrupt>:').kind == LineKind.FUNCTION_HEADER
        assert classify('00001000 <handle_interrupt>:').name == 'handle_interrupt'
        assert classify('handle_interrupt():').kind == LineKind.FUNCTION_LABEL
        assert classify('Disassembly of section .text:').kind == LineKind.OTHER
        assert classify('kernel.elf:     file format elf32-littlearm').kind == LineKind.OTHER
        assert classify('\t...').kind == LineKind.OTHER

    def test_location_marker(self):
        line = classify('/src/kernel/uart.rs:40 (discriminator 2)')
        assert line.kind == LineKind.LOCATION
        assert (line.source_file, line.source_line) == ('/src/kernel/uart.rs', 40)

    @pytest.mark.parametrize('text', ['C:/src/uart.rs:40', 'src.c:ten'])
    def test_malformed_location_marker(self, text):
        with pytest.raises(DisassemblyFormatError):
            classify(text, 7)

    def test_malformed_marker_fails_indexing(self):
        with pytest.raises(DisassemblyFormatError) as excinfo:
            DisassemblyModel.from_text(LISTING + 'a:b:3\n')
        assert 'a:b:3' in str(excinfo.value)


class TestOutlinedFunctions:
    def test_count_and_aliases(self, model):
        outlined = model.outlined['OUTLINED_FUNCTION_3']
        assert outlined.instruction_count == 4
        assert model.outlined['_ZN6kernel17OUTLINED_FUNCTION3E'] is outlined
        assert 'mov\tr7, sp' in outlined.text
        assert '.word' not in outlined.text
        assert outlined.text.endswith('OUTLINED_FUNCTION_END')

    def test_first_definition_wins(self):
        lines = [classify(t) for t in LISTING.splitlines()]
        table = resolve_outlined_functions(lines)
        assert table['OUTLINED_FUNCTION_3'].instruction_count == 4
        assert 'nop' not in table['OUTLINED_FUNCTION_3'].text


class TestSourceIndex:
    def test_outlined_call_is_expanded(self, model):
        info = model.lookup('src.c')[0]
        assert info.source_line == 10
        assert info.instruction_count == 1 + 4
        assert 'push\t{r7, lr}' in info.instruction_text

    def test_literals_are_excluded(self, model):
        info = model.lookup('src.c')[1]
        assert info.source_line == 12
        assert info.instruction_count == 2
        assert '.word' not in info.instruction_text

    def test_discriminator_is_dropped(self, model):
        [info] = model.lookup('/src/kernel/uart.rs')
        assert info.source_line == 40
        assert info.instruction_count == 1

    def test_alias_reference_is_expanded(self, model):
        info = model.lookup('src.c')[2]
        assert info.source_line == 30
        assert info.instruction_count == 2 + 4

    def test_marker_without_instructions(self, model):
        info = model.lookup('src.c')[3]
        assert info.source_line == 31
        assert info.instruction_count == 0

    def test_entries_are_in_listing_order(self, model):
        infos = model.lookup('src.c')
        assert [i.source_line for i in infos] == [10, 12, 30, 31]
        indexes = [i.disassembly_line_index for i in infos]
        assert indexes == sorted(indexes)
        assert model.lines[indexes[0]] == 'src.c:10'

    def test_unknown_file(self, model):
        assert model.lookup('missing.c') is None


def test_single_outlined_call_scenario():
    listing = '\n'.join([
        '00000ff0 <f>:',
        'f():',
        'src.c:10',
        '    1000:\tf000 f802 \tbl\t2000 <OUTLINED_FUNCTION_3>',
        '',
        '00002000 <OUTLINED_FUNCTION_3>:',
        'OUTLINED_FUNCTION_3():',
        '    2000:\tb580      \tpush\t{r7, lr}',
        '    2002:\t2000      \tmovs\tr0, #0',
        '    2004:\t2101      \tmovs\tr1, #1',
        '    2006:\tbd80      \tpop\t{r7, pc}',
    ])
    model = DisassemblyModel.from_text(listing)
    [info] = model.lookup('src.c')
    assert info.source_line == 10
    assert info.instruction_count == 5


def test_from_file(tmp_path):
    path = tmp_path / 'kernel.lst'
    path.write_text(LISTING)
    model = DisassemblyModel.from_file(str(path))
    assert model.lookup('src.c') == DisassemblyModel.from_text(LISTING).lookup('src.c')
    assert model.lookup('src.c')[0].instruction_count == 1 + 4
