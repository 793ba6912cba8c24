"""Assembler: encodings, labels, directives and errors."""

import sys

import pytest

import assemble
import vm as vm_module
from assemble import Assembler, AssemblerError
from executable import ZSTD_MAGIC, Mode, Opcode, load_program


def words(source: str):
    return assemble.assemble(source).words


class TestEncoding:

    def test_inline_immediate(self):
        assert words("set r0, #5") == [0x03400050]

    def test_bare_number_immediate(self):
        assert words("set r1, 3") == [0x03401030]

    def test_extended_immediate(self):
        assert words("set r0, #0xFF") == [0x03400001, 0xFF]

    def test_negative_immediate(self):
        assert words("set r0, #-1") == [0x03400001, 0xFFFFFFFF]

    def test_char_immediate(self):
        assert words("set r0, #'A'") == [0x03400001, 0x41]

    @pytest.mark.parametrize("char", [";", ":", ","])
    def test_char_immediate_punctuation(self, char):
        assert words(f"set r0, #'{char}'  ; trailing comment") == [0x03400001, ord(char)]

    def test_char_immediate_after_label(self):
        asm = Assembler()
        program = asm.assemble("hlt\nsep: sd8 r0, ':'")
        assert asm.labels['sep'] == 4
        assert program[1].operands == (0, 0, ord(':'))

    def test_equ_char(self):
        assert words(".equ SEMI ';'\nset r0, SEMI") == [0x03400001, ord(';')]

    def test_register_forms(self):
        assert words("sub r2, r0, r1") == [0x06002010]
        assert words("sub r2, r1") == [0x06002210]

    def test_set_base_offset_uses_src2_field(self):
        assert words("set r0, [r1+4]") == [0x03C00140]

    def test_alu_base_offset_uses_offset_field(self):
        assert words("sub r2, r0, [r1+4]") == [0x06C02014]

    def test_register_indirect(self):
        assert words("set r0, [r1]") == [0x03800100]
        assert words("sub r2, r0, [r1]") == [0x06802010]

    def test_store(self):
        assert words("sd r3, [r1+8]") == [0x0FC03180]
        assert words("sd r0, #0x2000") == [0x0F400001, 0x2000]

    def test_cmp(self):
        assert words("cmp r0, r1") == [0x17000100]

    def test_hlt(self):
        assert words("hlt") == [0x00000000]

    def test_case_insensitive(self):
        assert words("SET R0, #5") == words("set r0, #5")

    def test_if(self):
        program = assemble.assemble("if r3, #8")
        assert program[0].opcode == Opcode.IF
        assert program[0].operands == (3, 0, 8)


class TestLabels:

    def test_forward_label_uses_extension(self):
        assert words("jmp end\nset r0, #1\nend: hlt") == [0x1E400001, 8, 0x03400010, 0]

    def test_backward_label_inline(self):
        assert words("set r0, #1\nloop: jmp loop") == [0x03400010, 0x1E400040]

    def test_label_counts_instructions_not_words(self):
        asm = Assembler()
        asm.assemble("set r0, #0x1000\nset r1, #0x2000\nhere: hlt")
        assert asm.labels['here'] == 8

    def test_label_on_own_line(self):
        asm = Assembler()
        program = asm.assemble("start:\n  ; comment\n\n  hlt")
        assert asm.labels['start'] == 0
        assert len(program) == 1

    def test_equ(self):
        assert words(".equ ADDR 0x2000\nsd r0, ADDR") == [0x0F400001, 0x2000]
        assert words(".equ SMALL, 3\nset r0, SMALL") == [0x03400030]

    def test_label_as_data(self):
        program = assemble.assemble("set r0, target\nhlt\ntarget: hlt")
        assert program[0].operands == (0, 0, 8)
        assert program[0].extended


class TestErrors:

    @pytest.mark.parametrize("source,message", [
        ("frob r0", "Unknown instruction"),
        ("set r16, #1", "Destination must be a register"),
        ("jmp nowhere", "Undefined label"),
        ("a: hlt\na: hlt", "Duplicate label"),
        ("set r0, [r1+16]", "Offset out of range"),
        ("cmp r0, #1", "cmp operands must be registers"),
        ("sd r0, r1", "Address must be"),
        ("hlt r0", "takes no operands"),
        ("set r0", "requires 2 operands"),
        (".org 0", "Unknown directive"),
    ])
    def test_errors(self, source, message):
        with pytest.raises(AssemblerError) as exc:
            assemble.assemble(source)
        assert message in str(exc.value)

    def test_error_line_number(self):
        with pytest.raises(AssemblerError) as exc:
            assemble.assemble("hlt\n\n  bogus r1")
        assert exc.value.line_num == 3
        assert exc.value.line == "  bogus r1"


class TestCommandLine:

    def test_assemble_and_run(self, tmp_path, monkeypatch, capsys):
        src = tmp_path / "prog.asm"
        src.write_text("set r0, #0x1234\nsd r0, #0x2000\nhlt\n")

        monkeypatch.setattr(sys, 'argv', ['dbvm-asm', str(src), '--compress'])
        assemble.main()
        out = tmp_path / "prog.dbv"
        assert out.read_bytes()[:4] == ZSTD_MAGIC
        assert load_program(str(out))[0].mode == Mode.IMMEDIATE

        monkeypatch.setattr(sys, 'argv', ['dbvm', str(out), '--memory-size', '0x10000'])
        with pytest.raises(SystemExit) as exc:
            vm_module.main()
        assert exc.value.code == 0
        stdout = capsys.readouterr().out
        assert "Program exited successfully" in stdout
        assert "R0: 0x00001234" in stdout
        assert "[0x002000] = 0x00001234" in stdout

    def test_run_error_exit_status(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "bad.dbv"
        path.write_bytes(assemble.assemble("psh r0").encode())
        monkeypatch.setattr(sys, 'argv', ['dbvm', str(path), '--memory-size', '0x10000'])
        with pytest.raises(SystemExit) as exc:
            vm_module.main()
        assert exc.value.code == 1
        assert "Unimplemented opcode: PSH" in capsys.readouterr().out

    def test_decode_error(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "bad.dbv"
        path.write_bytes(b'\xFF\x00\x00\x00')
        monkeypatch.setattr(sys, 'argv', ['dbvm', str(path)])
        with pytest.raises(SystemExit) as exc:
            vm_module.main()
        assert exc.value.code == 1
        assert "Invalid opcode: 0xFF" in capsys.readouterr().err

    def test_disasm(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "prog.dbv"
        path.write_bytes(assemble.assemble("set r0, #5\nhlt").encode())
        monkeypatch.setattr(sys, 'argv', ['dbvm', '--disasm', str(path)])
        with pytest.raises(SystemExit) as exc:
            vm_module.main()
        assert exc.value.code == 0
        assert "SET   IMM R0, R0, #0x5" in capsys.readouterr().out

    def test_corrupt_compressed_program(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "bad.dbv"
        path.write_bytes(ZSTD_MAGIC + b'\x00' * 8)
        monkeypatch.setattr(sys, 'argv', ['dbvm', str(path)])
        with pytest.raises(SystemExit) as exc:
            vm_module.main()
        assert exc.value.code == 1
        assert "Corrupt compressed image" in capsys.readouterr().err
