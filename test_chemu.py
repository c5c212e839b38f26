"""
Chemu Machine Test Suite
=========================
Executor semantics for every instruction family: wrapping arithmetic and
the VF flag, skips, call/return, drawing, BCD and array copies, the key
wait, timers, and the fault paths (bus, stack, decode).
"""
import random
import unittest

from asm import assemble
from chemu import (
    Chip8, StepResult, BusFault, StackFault, ProgramTooLarge, ChemuError,
    DecodeError, FONT, FONT_SIZE, STACK_BASE, PROGRAM_START, MAX_PROGRAM,
    MAX_CALL_DEPTH, INSTRUCTION_TYPES,
)
from instruction import Register, Random


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def make_cpu(source: str, seed: int = 1234) -> Chip8:
    """Assemble *source* at 0x200 and load it into a fresh machine."""
    cpu = Chip8(rng=random.Random(seed))
    cpu.load_program(assemble(source))
    return cpu


def run_asm(source: str, steps: int) -> Chip8:
    """Assemble, load and execute exactly *steps* instructions."""
    cpu = make_cpu(source)
    for _ in range(steps):
        cpu.step()
    return cpu


# ---------------------------------------------------------------------------
#  Arithmetic and flags
# ---------------------------------------------------------------------------

class TestArithmetic(unittest.TestCase):
    def test_add_overflow_sets_flag(self):
        cpu = run_asm("LD V0, 0xFF\nLD V1, 0x02\nADD V0, V1", 3)
        self.assertEqual(cpu.v[0], 0x01)
        self.assertEqual(cpu.v[0xF], 1)

    def test_add_without_overflow_clears_flag(self):
        cpu = run_asm("LD VF, 1\nLD V0, 1\nLD V1, 2\nADD V0, V1", 4)
        self.assertEqual(cpu.v[0], 3)
        self.assertEqual(cpu.v[0xF], 0)

    def test_add_immediate_wraps_and_keeps_flag(self):
        cpu = run_asm("LD VF, 7\nLD V0, 0xFF\nADD V0, 2", 3)
        self.assertEqual(cpu.v[0], 0x01)
        self.assertEqual(cpu.v[0xF], 7)

    def test_subtract_no_borrow(self):
        cpu = run_asm("LD V0, 5\nLD V1, 3\nSUB V0, V1", 3)
        self.assertEqual(cpu.v[0], 2)
        self.assertEqual(cpu.v[0xF], 1)

    def test_subtract_borrow(self):
        cpu = run_asm("LD V0, 3\nLD V1, 5\nSUB V0, V1", 3)
        self.assertEqual(cpu.v[0], 0xFE)
        self.assertEqual(cpu.v[0xF], 0)

    def test_subtract_equal_is_no_borrow(self):
        cpu = run_asm("LD V0, 9\nLD V1, 9\nSUB V0, V1", 3)
        self.assertEqual(cpu.v[0], 0)
        self.assertEqual(cpu.v[0xF], 1)

    def test_subtract_negated(self):
        cpu = run_asm("LD V0, 3\nLD V1, 5\nSUBN V0, V1", 3)
        self.assertEqual(cpu.v[0], 2)
        self.assertEqual(cpu.v[0xF], 1)
        cpu = run_asm("LD V0, 5\nLD V1, 3\nSUBN V0, V1", 3)
        self.assertEqual(cpu.v[0], 0xFE)
        self.assertEqual(cpu.v[0xF], 0)

    def test_shift_right_reads_source(self):
        cpu = run_asm("LD V1, 0x05\nSHR V0, V1", 2)
        self.assertEqual(cpu.v[0], 0x02)
        self.assertEqual(cpu.v[1], 0x05)
        self.assertEqual(cpu.v[0xF], 1)

    def test_shift_left_flag_is_normalised(self):
        cpu = run_asm("LD V0, 0x81\nSHL V0", 2)
        self.assertEqual(cpu.v[0], 0x02)
        self.assertEqual(cpu.v[0xF], 1)
        cpu = run_asm("LD V0, 0x41\nSHL V0", 2)
        self.assertEqual(cpu.v[0], 0x82)
        self.assertEqual(cpu.v[0xF], 0)

    def test_flag_wins_when_destination_is_vf(self):
        cpu = run_asm("LD VF, 0x10\nLD V1, 2\nADD VF, V1", 3)
        self.assertEqual(cpu.v[0xF], 0)
        cpu = run_asm("LD VF, 0x10\nLD V1, 0x20\nSUB VF, V1", 3)
        self.assertEqual(cpu.v[0xF], 0)
        cpu = run_asm("LD VF, 0x20\nLD V1, 0x10\nSUB VF, V1", 3)
        self.assertEqual(cpu.v[0xF], 1)

    def test_logic_ops(self):
        cpu = run_asm("LD V0, 0x0C\nLD V1, 0x0A\nLD V2, 0x0C\nLD V3, 0x0C\n"
                      "OR V0, V1\nAND V2, V1\nXOR V3, V1", 7)
        self.assertEqual(cpu.v[0], 0x0E)
        self.assertEqual(cpu.v[2], 0x08)
        self.assertEqual(cpu.v[3], 0x06)

    def test_load_register(self):
        cpu = run_asm("LD V7, 0x99\nLD V2, V7", 2)
        self.assertEqual(cpu.v[2], 0x99)

    def test_random_respects_mask(self):
        cpu = Chip8(rng=random.Random(7))
        seen = set()
        for _ in range(300):
            cpu.execute(Random(Register.V0, 0x0F))
            self.assertEqual(cpu.v[0] & ~0x0F, 0)
            seen.add(cpu.v[0])
        self.assertGreater(len(seen), 1)

    def test_random_is_reproducible_with_seed(self):
        a = run_asm("RND V0, 0xFF\nRND V1, 0xFF", 2)
        b = run_asm("RND V0, 0xFF\nRND V1, 0xFF", 2)
        self.assertEqual(a.v[:2], b.v[:2])


# ---------------------------------------------------------------------------
#  Control flow
# ---------------------------------------------------------------------------

class TestControlFlow(unittest.TestCase):
    def test_skip_taken_advances_four(self):
        cpu = run_asm("LD V0, 5\nSE V0, 5", 2)
        self.assertEqual(cpu.pc, 0x206)

    def test_skip_not_taken_advances_two(self):
        cpu = run_asm("LD V0, 5\nSE V0, 6", 2)
        self.assertEqual(cpu.pc, 0x204)

    def test_register_skips(self):
        cpu = run_asm("LD V0, 1\nLD V1, 1\nSE V0, V1", 3)
        self.assertEqual(cpu.pc, 0x208)
        cpu = run_asm("LD V0, 1\nLD V1, 1\nSNE V0, V1", 3)
        self.assertEqual(cpu.pc, 0x206)
        cpu = run_asm("LD V0, 1\nSNE V0, 2", 2)
        self.assertEqual(cpu.pc, 0x206)

    def test_call_return_round_trip(self):
        cpu = make_cpu("CALL 0x300\n.org 0x300\nRET")
        self.assertEqual(cpu.pc, 512)
        sp_before = cpu.sp
        cpu.step()
        self.assertEqual(cpu.pc, 0x300)
        self.assertEqual(cpu.call_depth, 1)
        cpu.step()
        self.assertEqual(cpu.pc, 514)
        self.assertEqual(cpu.sp, sp_before)

    def test_stack_lives_in_memory(self):
        cpu = run_asm("CALL 0x300\n.org 0x300\nRET", 1)
        self.assertEqual(cpu.mem_read16(STACK_BASE), 0x202)

    def test_jump(self):
        cpu = run_asm("JP 0x246", 1)
        self.assertEqual(cpu.pc, 0x246)

    def test_jump_offset_adds_v0(self):
        cpu = run_asm("LD V0, 4\nJP V0, 0x300", 2)
        self.assertEqual(cpu.pc, 0x304)

    def test_sys_is_a_no_op(self):
        cpu = run_asm("SYS 0x123", 1)
        self.assertEqual(cpu.pc, 0x202)

    def test_call_depth_limit(self):
        cpu = make_cpu("loop: CALL loop")
        for _ in range(MAX_CALL_DEPTH):
            cpu.step()
        with self.assertRaises(StackFault):
            cpu.step()

    def test_return_with_empty_stack(self):
        cpu = make_cpu("RET")
        with self.assertRaises(StackFault) as cm:
            cpu.step()
        self.assertIn("00EE", str(cm.exception))


# ---------------------------------------------------------------------------
#  Display
# ---------------------------------------------------------------------------

DRAW_BYTE = """
    LD V1, {x}
    LD V2, {y}
    LD I, sprite
    DRW V1, V2, 1
    DRW V1, V2, 1
end:
    JP end
sprite:
    .db 0xFF
"""


class TestDraw(unittest.TestCase):
    def test_double_draw_is_idempotent(self):
        cpu = run_asm(DRAW_BYTE.format(x=10, y=4), 4)
        self.assertEqual(cpu.framebuffer.lit_count, 8)
        self.assertEqual(cpu.v[0xF], 0)
        cpu.step()
        self.assertEqual(cpu.framebuffer.lit_count, 0)
        self.assertEqual(cpu.v[0xF], 1)

    def test_draw_wraps_horizontally(self):
        cpu = run_asm(DRAW_BYTE.format(x=63, y=0), 4)
        fb = cpu.framebuffer
        self.assertTrue(fb.pixel(63, 0))
        for x in range(0, 7):
            self.assertTrue(fb.pixel(x, 0), f"x={x}")
        self.assertFalse(fb.pixel(7, 0))
        self.assertEqual(fb.lit_count, 8)

    def test_draw_wraps_vertically(self):
        cpu = run_asm("LD V0, 0\nLD V1, 30\nLD F, V0\nDRW V1, V1, 5", 4)
        # glyph "0" is 5 rows; rows 30, 31, 0, 1, 2
        fb = cpu.framebuffer
        self.assertTrue(fb.pixel(30, 30))
        self.assertTrue(fb.pixel(30, 2))
        self.assertFalse(fb.pixel(30, 3))

    def test_font_glyph(self):
        cpu = run_asm("LD V0, 0\nLD V1, 0\nLD F, V0\nDRW V1, V1, 5", 4)
        self.assertEqual(cpu.framebuffer.lit_count, 14)

    def test_clear(self):
        cpu = run_asm(DRAW_BYTE.format(x=0, y=0) + "\n", 4)
        self.assertGreater(cpu.framebuffer.lit_count, 0)
        cpu.framebuffer.clear()
        self.assertEqual(cpu.framebuffer.lit_count, 0)
        cpu = run_asm("LD V0, 0\nLD F, V0\nDRW V0, V0, 5\nCLS", 4)
        self.assertEqual(cpu.framebuffer.lit_count, 0)

    def test_digit_address_uses_low_nibble(self):
        cpu = run_asm("LD V0, 0x1A\nLD F, V0", 2)
        self.assertEqual(cpu.i, 0xA * 5)


# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class TestMemory(unittest.TestCase):
    def test_bcd(self):
        cpu = run_asm("LD V0, 123\nLD I, 0x300\nLD B, V0", 3)
        self.assertEqual(list(cpu.mem[0x300:0x303]), [1, 2, 3])
        self.assertEqual(cpu.i, 0x300)

    def test_bcd_small_values(self):
        cpu = run_asm("LD V0, 7\nLD I, 0x300\nLD B, V0", 3)
        self.assertEqual(list(cpu.mem[0x300:0x303]), [0, 0, 7])

    def test_array_round_trip(self):
        cpu = run_asm("""
            LD V0, 1
            LD V1, 2
            LD V2, 3
            LD I, 0x300
            LD [I], V2
            LD V0, 0
            LD V1, 0
            LD V2, 0
            LD V2, [I]
        """, 9)
        self.assertEqual(cpu.v[:3], [1, 2, 3])
        self.assertEqual(list(cpu.mem[0x300:0x303]), [1, 2, 3])
        self.assertEqual(cpu.i, 0x300)

    def test_store_array_only_touches_range(self):
        cpu = run_asm("LD V0, 9\nLD V1, 9\nLD I, 0x300\nLD [I], V0", 4)
        self.assertEqual(cpu.mem[0x300], 9)
        self.assertEqual(cpu.mem[0x301], 0)

    def test_add_address(self):
        cpu = run_asm("LD I, 0x300\nLD V0, 0x10\nADD I, V0", 3)
        self.assertEqual(cpu.i, 0x310)

    def test_font_is_loaded(self):
        cpu = Chip8()
        self.assertEqual(bytes(cpu.mem[:FONT_SIZE]), FONT)

    def test_font_size(self):
        self.assertEqual(len(FONT), FONT_SIZE)
        self.assertEqual(FONT_SIZE, 16 * 5)

    def test_font_is_readable(self):
        cpu = run_asm("LD I, 0\nLD V0, [I]", 2)
        self.assertEqual(cpu.v[0], 0xF0)

    def test_font_is_read_only(self):
        cpu = make_cpu("LD I, 0x010\nLD [I], V0")
        cpu.step()
        with self.assertRaises(BusFault):
            cpu.step()
        self.assertEqual(bytes(cpu.mem[:FONT_SIZE]), FONT)

    def test_array_load_past_end_faults(self):
        cpu = make_cpu("LD I, 0xFFF\nLD V1, [I]")
        cpu.step()
        with self.assertRaises(BusFault) as cm:
            cpu.step()
        self.assertEqual(cm.exception.pc, 0x202)
        self.assertEqual(cm.exception.word, 0xF165)

    def test_index_overflow_faults(self):
        cpu = make_cpu("LD I, 0xFFF\nLD V0, 0xFF\nADD I, V0\nLD [I], V0")
        for _ in range(3):
            cpu.step()
        self.assertEqual(cpu.i, 0x10FE)
        with self.assertRaises(BusFault):
            cpu.step()

    def test_fetch_past_end_faults(self):
        cpu = make_cpu("JP 0xFFF")
        cpu.step()
        with self.assertRaises(BusFault):
            cpu.step()

    def test_program_too_large(self):
        cpu = Chip8()
        with self.assertRaises(ProgramTooLarge):
            cpu.load_program(bytes(MAX_PROGRAM + 1))
        cpu.load_program(bytes(MAX_PROGRAM))

    def test_shorter_program_clears_old_tail(self):
        cpu = Chip8()
        cpu.load_program(b"\x11" * 10)
        cpu.load_program(b"\x00\xE0")
        self.assertEqual(bytes(cpu.mem[0x200:0x202]), b"\x00\xE0")
        self.assertEqual(bytes(cpu.mem[0x202:0x20A]), bytes(8))

    def test_negative_block_length_faults(self):
        cpu = Chip8()
        with self.assertRaises(BusFault):
            cpu.read_block(0x300, -1)

    def test_faults_are_chemu_errors(self):
        for exc in (BusFault, StackFault, ProgramTooLarge, DecodeError):
            self.assertTrue(issubclass(exc, ChemuError))


# ---------------------------------------------------------------------------
#  Keys and timers
# ---------------------------------------------------------------------------

class TestKeys(unittest.TestCase):
    def test_wait_key_suspends_without_advancing(self):
        cpu = make_cpu("LD V3, K\nADD V3, 1")
        self.assertIs(cpu.step(), StepResult.AWAITING_KEY)
        self.assertEqual(cpu.pc, PROGRAM_START)
        self.assertIs(cpu.waiting_key, Register.V3)
        self.assertIs(cpu.step(), StepResult.AWAITING_KEY)
        cpu.keypad.press(7)
        self.assertIs(cpu.step(), StepResult.EXECUTED)
        self.assertEqual(cpu.v[3], 7)
        self.assertEqual(cpu.pc, 0x202)
        self.assertFalse(cpu.awaiting_key)

    def test_wait_key_ignores_earlier_presses(self):
        cpu = make_cpu("LD V3, K")
        cpu.keypad.press(5)
        self.assertIs(cpu.step(), StepResult.AWAITING_KEY)
        cpu.keypad.release(5)
        cpu.keypad.press(9)
        self.assertIs(cpu.step(), StepResult.EXECUTED)
        self.assertEqual(cpu.v[3], 9)

    def test_run_stops_at_key_wait(self):
        cpu = make_cpu("LD V0, 1\nLD V1, 2\nLD V2, K")
        self.assertEqual(cpu.run(100), 2)
        self.assertTrue(cpu.awaiting_key)

    def test_skip_if_pressed(self):
        cpu = make_cpu("LD V0, 5\nSKP V0")
        cpu.keypad.press(5)
        cpu.step()
        cpu.step()
        self.assertEqual(cpu.pc, 0x206)
        cpu = make_cpu("LD V0, 5\nSKNP V0")
        cpu.step()
        cpu.step()
        self.assertEqual(cpu.pc, 0x206)


class TestTimers(unittest.TestCase):
    def test_tick_decrements_to_zero(self):
        cpu = run_asm("LD V0, 2\nLD DT, V0\nLD ST, V0", 3)
        self.assertTrue(cpu.sound_active)
        cpu.tick_timers()
        self.assertEqual(cpu.delay_timer, 1)
        cpu.tick_timers()
        cpu.tick_timers()
        self.assertEqual(cpu.delay_timer, 0)
        self.assertEqual(cpu.sound_timer, 0)
        self.assertFalse(cpu.sound_active)

    def test_step_does_not_tick(self):
        cpu = run_asm("LD V0, 5\nLD DT, V0\nLD V1, DT", 3)
        self.assertEqual(cpu.v[1], 5)


# ---------------------------------------------------------------------------
#  Machine-level behaviour
# ---------------------------------------------------------------------------

class TestMachine(unittest.TestCase):
    def test_every_instruction_has_a_handler(self):
        self.assertEqual(Chip8().handled_types(), INSTRUCTION_TYPES)

    def test_decode_error_propagates(self):
        cpu = make_cpu(".dw 0x5001")
        with self.assertRaises(DecodeError) as cm:
            cpu.step()
        self.assertEqual(cm.exception.word, 0x5001)
        self.assertEqual(cpu.pc, PROGRAM_START)

    def test_trace(self):
        cpu = make_cpu("LD VA, 0x3F")
        cpu.trace = True
        cpu.step()
        self.assertEqual(cpu.trace_output, ["200: 6A3F  LD VA, 0x3F"])

    def test_reset(self):
        cpu = run_asm("LD V0, 0\nLD F, V0\nDRW V0, V0, 5\nLD V5, 9", 4)
        cpu.reset()
        self.assertEqual(cpu.v, [0] * 16)
        self.assertEqual(cpu.pc, PROGRAM_START)
        self.assertEqual(cpu.sp, STACK_BASE)
        self.assertEqual(cpu.framebuffer.lit_count, 0)
        self.assertEqual(cpu.mem[PROGRAM_START], 0)

    def test_dump_regs(self):
        cpu = run_asm("LD VA, 0x3F", 1)
        text = cpu.dump_regs()
        self.assertIn("VA=3F", text)
        self.assertIn("PC=202", text)


if __name__ == "__main__":
    unittest.main()
