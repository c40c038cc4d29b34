import functools
import io
import itertools
import logging
import os
import shutil
import subprocess
import sys
import tempfile

import pytest

import stringTab
from stringTab import (
    BinarySearchPlan,
    Code,
    DirectMapPlan,
    HashedSwitchPlan,
    InputError,
    InternalInvariantError,
    LanguageC,
    LanguageRust,
    MultiRunPlan,
    NameTable,
    OneRunPlan,
    SparseMapPlan,
    Value,
    binaryBitsFor,
    checkSyntax,
    distinctNames,
    fnv1a32,
    fromBits,
    generate,
    generate_all,
    indexBitsFor,
    languageClasses,
    languages,
    lookupName,
    normalize,
    pick_forward_plan,
    pick_reverse_plan,
    splitIntoRuns,
    typeWidth,
)
from stringTab.__main__ import main, parse_constant  # noqa: F401


def _values(*pairs, signed=True):
    """Helper: build Values from (name, value) pairs; references are K_<name>."""
    return [Value(name, "K_%s" % name, value, signed) for name, value in pairs]


def _numbered(n, start=0):
    return _values(*[("Name%d" % i, start + i) for i in range(n)])


@functools.lru_cache(maxsize=None)
def _fnv_collision():
    """Helper: two distinct short names with the same FNV-1a hash."""
    seen = {}
    for i in itertools.count():
        name = "n%d" % i
        h = fnv1a32(name)
        if h in seen:
            return seen[h], name
        seen[h] = name


# ── Utility functions ──────────────────────────────────────────────


class TestBinaryBitsFor:
    def test_zero(self):
        assert binaryBitsFor(0, 0) == 0

    def test_8bit(self):
        assert binaryBitsFor(0, 255) == 8
        assert binaryBitsFor(-128, 127) == 8

    def test_64bit(self):
        assert binaryBitsFor(0, 2**64 - 1) == 64
        assert binaryBitsFor(-(2**63), 0) == 64

    def test_inverted_range_raises(self):
        with pytest.raises(ValueError):
            binaryBitsFor(5, 1)


class TestIndexBitsFor:
    def test_widths(self):
        assert indexBitsFor(0) == 8
        assert indexBitsFor(255) == 8
        assert indexBitsFor(256) == 16
        assert indexBitsFor(65535) == 16
        assert indexBitsFor(65536) == 32
        assert indexBitsFor(2**32 - 1) == 32

    def test_too_large(self):
        with pytest.raises(InputError) as e:
            indexBitsFor(2**32)
        assert e.value.reason == "tooLarge"


class TestTypeWidth:
    def test_c_types(self):
        assert typeWidth("uint16_t") == 16

    def test_rust_types(self):
        assert typeWidth("u32") == 32


class TestFnv1a32:
    def test_vectors(self):
        assert fnv1a32("") == 2166136261
        assert fnv1a32("a") == 0xE40C292C

    def test_utf8_bytes(self):
        h = 2166136261
        for b in "é".encode("utf-8"):
            h = ((h ^ b) * 16777619) & 0xFFFFFFFF
        assert fnv1a32("é") == h

    def test_collision_helper(self):
        a, b = _fnv_collision()
        assert a != b
        assert fnv1a32(a) == fnv1a32(b)


class TestFromBits:
    def test_signed(self):
        assert fromBits(2**64 - 1, True) == -1
        assert fromBits(2**63, True) == -(2**63)

    def test_unsigned(self):
        assert fromBits(-1, False) == 2**64 - 1
        assert fromBits(42, False) == 42


# ── Value normalizer and run splitter ──────────────────────────────


class TestNormalize:
    def test_empty_raises(self):
        with pytest.raises(InputError) as e:
            normalize([])
        assert e.value.reason == "empty"
        assert isinstance(e.value, ValueError)

    def test_float_raises(self):
        with pytest.raises(InputError) as e:
            normalize([Value("A", "A", 1.5)])
        assert e.value.reason == "unsupportedKind"

    def test_string_value_raises(self):
        with pytest.raises(InputError) as e:
            normalize([Value("A", "A", "1")])
        assert e.value.reason == "unsupportedKind"

    def test_bool_raises(self):
        with pytest.raises(InputError) as e:
            normalize([Value("A", "A", True)])
        assert e.value.reason == "unsupportedKind"

    def test_out_of_range_raises(self):
        with pytest.raises(InputError):
            normalize([Value("A", "A", 2**64)])

    def test_mixed_signedness_raises(self):
        with pytest.raises(InputError) as e:
            normalize([Value("A", "A", 1, True), Value("B", "B", 2, False)])
        assert e.value.reason == "unsupportedKind"

    def test_sorted(self):
        values = normalize(_values(("C", 3), ("A", 1), ("B", 2)))
        assert [v.value for v in values] == [1, 2, 3]

    def test_dedup_keeps_first_declared(self):
        values = normalize(_values(("B", 5), ("A", 5)))
        assert [v.name for v in values] == ["B"]

    def test_dedup_not_alphabetical(self):
        values = normalize(_values(("Zulu", 1), ("Alpha", 1), ("Mike", 1), ("X", 0)))
        assert [v.name for v in values] == ["X", "Zulu"]

    def test_records_declaration_order(self):
        values = normalize(_values(("B", 2), ("A", 1)))
        assert [v.order for v in values] == [1, 0]

    def test_idempotent(self):
        once = normalize(_values(("B", 5), ("A", 5), ("C", 1)))
        twice = normalize(once)
        assert [(v.name, v.value, v.order) for v in once] == [
            (v.name, v.value, v.order) for v in twice
        ]

    def test_bit_pattern_signed(self):
        values = normalize([Value("M", "M", 2**64 - 1, True)])
        assert values[0].value == -1

    def test_default_text(self):
        values = normalize([Value("M", "M", -3)])
        assert values[0].text == "-3"

    def test_input_not_mutated(self):
        raw = _values(("B", 2), ("A", 1))
        normalize(raw)
        assert [v.name for v in raw] == ["B", "A"]
        assert raw[0].order is None


class TestSplitIntoRuns:
    def test_two_runs(self):
        runs = splitIntoRuns(normalize(_values(*[(str(n), n) for n in (1, 2, 3, 5, 6, 7)])))
        assert [len(r) for r in runs] == [3, 3]
        assert [[v.value for v in r] for r in runs] == [[1, 2, 3], [5, 6, 7]]

    def test_one_run(self):
        runs = splitIntoRuns(normalize(_values(*[(str(n), n) for n in (1, 2, 3, 4)])))
        assert [len(r) for r in runs] == [4]

    def test_single_value(self):
        runs = splitIntoRuns(normalize(_values(("A", 9))))
        assert [len(r) for r in runs] == [1]

    def test_across_zero(self):
        runs = splitIntoRuns(normalize(_values(("A", -1), ("B", 0), ("C", 1))))
        assert len(runs) == 1

    def test_bit_flags(self):
        values = normalize(_values(*[("F%d" % i, 1 << i) for i in range(12)]))
        runs = splitIntoRuns(values)
        # 1 and 2 are adjacent, every other flag is alone.
        assert [len(r) for r in runs] == [2] + [1] * 10

    def test_maximal(self):
        runs = splitIntoRuns(normalize(_numbered(5) + _values(("X", 7), ("Y", 8))))
        for a, b in zip(runs, runs[1:]):
            assert b[0].value != a[-1].value + 1


# ── Name tables ────────────────────────────────────────────────────


class TestNameTable:
    def test_index_invariants(self):
        table = NameTable(["Placebo", "Aspirin", "", "Ibuprofen"])
        assert len(table.index) == len(table.names) + 1
        assert table.index == sorted(table.index)
        assert table.index[-1] == len(table.blob)

    def test_names(self):
        names = ["Placebo", "Aspirin", "", "Ibuprofen"]
        table = NameTable(names)
        assert [table.name(i) for i in range(len(names))] == names

    def test_width_255(self):
        assert NameTable(["x" * 255]).bits == 8

    def test_width_256(self):
        assert NameTable(["x" * 256]).bits == 16

    def test_width_65536(self):
        assert NameTable(["x" * 65536]).bits == 32

    def test_width_per_blob(self):
        big = NameTable(["x" * 300])
        small = NameTable(["x"])
        assert (big.bits, small.bits) == (16, 8)

    def test_terminator(self):
        table = NameTable(["ab", "c"], "\0")
        assert table.blob == b"ab\0c\0"
        assert table.index == [0, 3, 5]
        assert table.span(0) == (0, 2)
        assert table.name(1) == "c"

    def test_terminator_in_name_raises(self):
        with pytest.raises(InputError) as e:
            NameTable(["a\0b"], "\0")
        assert e.value.reason == "invalidName"

    def test_utf8_offsets(self):
        table = NameTable(["é", "x"])
        assert table.index == [0, 2, 3]
        assert table.name(0) == "é"


class TestDistinctNames:
    def test_first_declared_wins(self):
        values = normalize(_values(("Same", 9), ("Other", 1), ("Same", 2)))
        kept = distinctNames(values)
        assert [(v.name, v.value) for v in kept] == [("Other", 1), ("Same", 9)]


# ── Languages ──────────────────────────────────────────────────────


class TestLanguageC:
    def setup_method(self):
        self.lang = LanguageC()

    def test_type_name(self):
        assert self.lang.type_name("u8") == "uint8_t"
        assert self.lang.type_name("u64") == "uint64_t"

    def test_int_literal(self):
        assert self.lang.int_literal(5) == "5"
        assert self.lang.int_literal(-5) == "-5"
        assert self.lang.int_literal(2**40) == "%dLL" % 2**40
        assert self.lang.int_literal(2**64 - 1) == "18446744073709551615ULL"
        assert self.lang.int_literal(-(2**63)) == "(-9223372036854775807LL-1)"

    def test_u64_literal(self):
        assert self.lang.u64_literal(-5) == "18446744073709551611ULL"

    def test_quote(self):
        assert self.lang.quote('a"b\\c') == '"a\\"b\\\\c"'
        assert self.lang.quote("é") == '"\\303\\251"'
        assert self.lang.quote("??=") == '"\\?\\?="'

    def test_string_literals_split(self):
        literals = self.lang.string_literals(b"x" * 200)
        assert len(literals) == 3
        assert "".join(s.strip('"') for s in literals) == "x" * 200

    def test_empty_string_literal(self):
        assert self.lang.string_literals(b"") == ['""']

    def test_declare_function(self):
        decl = self.lang.declare_function(
            "static inline", "int", "f", (("const char *", "name"), ("T *", "v"))
        )
        assert decl == "static inline int f (const char *name, T *v)"

    def test_range_cond(self):
        assert self.lang.range_cond("v", 0, 3, True) == "v <= 3"
        assert self.lang.range_cond("v", 0, 3, False) == "v >= 0 && v <= 3"
        assert self.lang.range_cond("v", 7, 7, True) == "v == 7"

    def test_if_block(self):
        assert self.lang.if_block("x", ["return 1;"]) == [
            "if (x) {",
            "  return 1;",
            "}",
        ]

    def test_preamble(self):
        buf = io.StringIO()
        self.lang.print_preamble(print=lambda *a: buf.write("".join(a) + "\n"))
        assert "#include <string.h>" in buf.getvalue()


class TestLanguageRust:
    def setup_method(self):
        self.lang = LanguageRust()

    def test_type_name(self):
        assert self.lang.type_name("u16") == "u16"

    def test_int_literal(self):
        assert self.lang.int_literal(-5) == "-5"

    def test_quote(self):
        assert self.lang.quote('a"b') == '"a\\"b"'
        assert self.lang.quote("é\n") == '"\\u{e9}\\u{a}"'

    def test_as_usize(self):
        assert self.lang.as_usize("3") == "3usize"
        assert self.lang.as_usize("i") == "(i) as usize"

    def test_array_index_unsafe(self):
        lang = LanguageRust(unsafe_array_access=True)
        assert lang.array_index("a", "i") == "unsafe { *(a.get_unchecked(i)) }"

    def test_switch(self):
        lines = self.lang.switch("v", [("1", ["return x;"])])
        assert lines[0] == "match v {"
        assert "  _ => {}" in lines

    def test_string_literals_concat(self):
        buf = []
        self.lang.print_string(
            "n", b"x" * 200, print=lambda *a: buf.append("".join(a))
        )
        assert buf[0] == "static n: &str = concat!("
        assert buf[-1].endswith(");")


class TestLanguagesDict:
    def test_has_c_and_rust(self):
        assert set(languages) == {"c", "rust"}
        assert set(languageClasses) == {"c", "rust"}

    def test_terminators(self):
        assert languages["c"].terminator == "\0"
        assert languages["rust"].terminator == ""


# ── Code class ─────────────────────────────────────────────────────


class TestCode:
    def test_namespace(self):
        code = Code("Pill")
        assert code.nameFor("name") == "Pill_name"

    def test_add_array_extends(self):
        code = Code("t")
        _, start1 = code.addArray("uint8_t", "u8", [1, 2])
        _, start2 = code.addArray("uint8_t", "u8", [3, 4])
        assert (start1, start2) == (0, 2)
        assert code.arrays["t_u8"].values == [1, 2, 3, 4]

    def test_add_function_dedup(self):
        code = Code("t")
        code.addFunction("int", "get", (("int", "u"),), ["return u;"])
        name = code.addFunction("int", "get", (("int", "u"),), ["return u;"])
        assert name == "t_get"
        assert len(code.functions) == 1

    def test_add_function_not_namespaced(self):
        code = Code("t")
        name = code.addFunction("int", "Lookup", (), ["return 0;"], namespaced=False)
        assert name == "Lookup"

    def test_print_code_c(self):
        code = Code("t")
        code.addCheck("A", "1")
        code.addString("name", b"ab\0")
        code.addArray("uint8_t", "index", [0, 3])
        code.addFunction("int", "get", (("int", "u"),), ["return u;"])
        output = code.text(language="c")
        assert '_Static_assert((A) - (1) == 0, "A changed value; regenerate");' in output
        assert 'static const char t_name[] = "ab\\000";' in output
        assert "static const uint8_t t_index[2]" in output
        assert "static inline int t_get (int u)" in output

    def test_print_code_rust(self):
        code = Code("t")
        code.addCheck("A", "1")
        code.addString("name", b"ab")
        code.addArray("u8", "index", [0, 2])
        output = code.text(language="rust")
        assert "const _: () = assert!((A) - (1) == 0);" in output
        assert 'static t_name: &str = "ab";' in output
        assert "static t_index: [u8; 2]" in output

    def test_print_code_public(self):
        code = Code("t")
        code.addArray("uint8_t", "u8", [1])
        assert "extern const" in code.text(language="c", private=False)

    def test_print_code_to_file(self):
        code = Code("t")
        code.addArray("uint8_t", "u8", [1])
        buf = io.StringIO()
        code.print_code(file=buf, language="c")
        assert buf.getvalue() == code.text(language="c")


class TestCheckSyntax:
    def test_balanced(self):
        assert checkSyntax("f(a[1]) { }") is None

    def test_brackets_in_strings_ignored(self):
        assert checkSyntax('x = "({[";') is None
        assert checkSyntax('x = "\\"(";') is None

    def test_comment_ignored(self):
        assert checkSyntax("// (\nx") is None

    def test_mismatch(self):
        assert checkSyntax("f(]") == "line 1: ']' does not match '('"

    def test_unclosed(self):
        assert checkSyntax("\n{") == "line 2: unclosed '{'"

    def test_unmatched(self):
        assert checkSyntax(")") == "line 1: unmatched ')'"

    def test_unterminated_string(self):
        assert "unterminated" in checkSyntax('"abc\n')

    def test_rust_lifetime(self):
        assert checkSyntax("Cow<'static, str>") is None


# ── Forward plans ──────────────────────────────────────────────────


class TestPickForwardPlan:
    def test_one_run(self):
        plan = pick_forward_plan("T", _numbered(4))
        assert isinstance(plan, OneRunPlan)

    def test_two_runs(self):
        plan = pick_forward_plan("T", _values(("A", 1), ("B", 2), ("C", 5)))
        assert isinstance(plan, MultiRunPlan)

    def test_ten_runs(self):
        values = _values(*[("N%d" % i, 3 * i) for i in range(10)])
        assert isinstance(pick_forward_plan("T", values), MultiRunPlan)

    def test_eleven_runs(self):
        values = _values(*[("N%d" % i, 3 * i) for i in range(11)])
        assert isinstance(pick_forward_plan("T", values), SparseMapPlan)

    def test_threshold_tunable(self):
        values = _values(*[("N%d" % i, 3 * i) for i in range(11)])
        plan = pick_forward_plan("T", values, run_threshold=11)
        assert isinstance(plan, MultiRunPlan)
        plan = pick_forward_plan("T", values, run_threshold=1)
        assert isinstance(plan, SparseMapPlan)

    def test_module_threshold(self, monkeypatch):
        monkeypatch.setattr(stringTab, "runThreshold", 2)
        values = _values(*[("N%d" % i, 3 * i) for i in range(3)])
        assert isinstance(pick_forward_plan("T", values), SparseMapPlan)

    def test_terminator_follows_language(self):
        plan = pick_forward_plan("T", _numbered(2), language="c")
        assert plan.table.blob.endswith(b"\0")
        plan = pick_forward_plan("T", _numbered(2), language="rust")
        assert not plan.table.blob.endswith(b"\0")


SHAPES = {
    "one_run": [("Placebo", 0), ("Aspirin", 1), ("Ibuprofen", 2)],
    "negative_run": [("Minus", -2), ("Less", -1), ("Zero", 0), ("Plus", 1)],
    "multi_run": [("A", 1), ("B", 2), ("C", 3), ("D", 5), ("E", 6), ("F", 7), ("G", 9)],
    "sparse": [("F%d" % i, 1 << i) for i in range(16)],
    "sparse_negative": [("S%d" % i, -1000 + 7 * i) for i in range(20)],
}


@pytest.fixture(params=sorted(SHAPES))
def shape(request):
    return _values(*SHAPES[request.param])


class TestStringify:
    @pytest.mark.parametrize("language", ["c", "rust"])
    def test_round_trip(self, shape, language):
        plan = pick_forward_plan("T", shape, language=language)
        for v in shape:
            assert plan.stringify(v.value) == v.name

    def test_fallback(self, shape):
        plan = pick_forward_plan("T", shape)
        known = {v.value for v in shape}
        for probe in (-(2**63), -1001, -3, 4, 8, 10, 1 << 17, 2**63 - 1):
            if probe not in known:
                assert plan.stringify(probe) == "T(%d)" % probe

    def test_dedup_tie_break(self):
        plan = pick_forward_plan("T", _values(("B", 5), ("A", 5)))
        assert plan.stringify(5) == "B"

    def test_one_run_wraps_below(self):
        plan = pick_forward_plan("T", _values(("A", 10), ("B", 11)))
        assert plan.stringify(9) == "T(9)"
        assert plan.stringify(12) == "T(12)"
        assert plan.stringify(-(2**63)) == "T(%d)" % -(2**63)

    def test_unsigned_extremes(self):
        values = _values(("Zero", 0), ("Max", 2**64 - 1), signed=False)
        plan = pick_forward_plan("U", values)
        assert isinstance(plan, MultiRunPlan)
        assert plan.stringify(2**64 - 1) == "Max"
        assert plan.stringify(1) == "U(1)"

    def test_plan_cost(self):
        plan = pick_forward_plan("T", _values(("Ab", 0), ("Cd", 1)), language="rust")
        assert plan.cost == 4 + 3
        assert "OneRun" in plan.describe()


# ── Reverse plans ──────────────────────────────────────────────────


class TestPickReversePlan:
    @pytest.mark.parametrize(
        "n, cls",
        [
            (1, HashedSwitchPlan),
            (500, HashedSwitchPlan),
            (501, BinarySearchPlan),
            (5000, BinarySearchPlan),
            (5001, DirectMapPlan),
        ],
    )
    def test_boundaries(self, n, cls):
        values = _numbered(n)
        plan = pick_reverse_plan("T", values)
        assert isinstance(plan, cls)
        for v in values[:: max(1, n // 97)] + values[-1:]:
            assert plan.lookup(v.name) == (v.value, True)
        assert plan.lookup("Name%d" % n) == (0, False)

    def test_thresholds_tunable(self):
        values = _numbered(5)
        assert isinstance(
            pick_reverse_plan("T", values, lookup_thresholds=(2, 10)), BinarySearchPlan
        )
        assert isinstance(
            pick_reverse_plan("T", values, lookup_thresholds=(2, 4)), DirectMapPlan
        )

    def test_counts_values_not_names(self):
        values = _values(*[("Same", i) for i in range(3)])
        plan = pick_reverse_plan("T", values, lookup_thresholds=(2, 10))
        assert isinstance(plan, BinarySearchPlan)
        assert len(plan.entries) == 1


@pytest.fixture(params=[(500, 5000), (0, 5000), (0, 0)], ids=["switch", "search", "map"])
def thresholds(request):
    return request.param


class TestLookup:
    def test_round_trip(self, shape, thresholds):
        plan = pick_reverse_plan("T", shape, lookup_thresholds=thresholds)
        for v in shape:
            assert plan.lookup(v.name) == (v.value, True)

    def test_unknown(self, shape, thresholds):
        plan = pick_reverse_plan("T", shape, lookup_thresholds=thresholds)
        for name in ("", "nope", "a", "F16", "Zzzz"):
            assert plan.lookup(name) == (0, False)

    def test_hash_collision(self, thresholds):
        a, b = _fnv_collision()
        values = _values((a, 1), (b, 2), ("other", 3))
        plan = pick_reverse_plan("T", values, lookup_thresholds=thresholds)
        assert plan.lookup(a) == (1, True)
        assert plan.lookup(b) == (2, True)

    def test_collision_grouped_under_one_branch(self):
        a, b = _fnv_collision()
        plan = HashedSwitchPlan("T", normalize(_values((a, 1), (b, 2))))
        assert len(plan.buckets) == 1
        assert [v.name for v in plan.buckets[0][1]] == sorted([a, b])

    def test_duplicate_names_first_declared(self, thresholds):
        values = _values(("Dup", 7), ("Dup", 3), ("Other", 1))
        plan = pick_reverse_plan("T", values, lookup_thresholds=thresholds)
        assert plan.lookup("Dup") == (7, True)

    def test_buckets_sorted(self):
        plan = HashedSwitchPlan("T", normalize(_numbered(50)))
        hashes = [h for h, _ in plan.buckets]
        assert hashes == sorted(hashes)

    def test_binary_search_byte_order(self):
        values = _values(("b", 1), ("a", 2), ("é", 3), ("Z", 4))
        plan = BinarySearchPlan("T", normalize(values))
        assert [v.name for v in plan.entries] == ["Z", "a", "b", "é"]

    def test_direct_map_slots(self):
        plan = DirectMapPlan("T", normalize(_numbered(5)))
        assert len(plan.slots) == 16
        assert sorted(s for s in plan.slots if s) == [1, 2, 3, 4, 5]


# ── generate ───────────────────────────────────────────────────────


PILLS = [("Placebo", 0), ("Aspirin", 1), ("Ibuprofen", 2), ("Paracetamol", 3)]


class TestGenerate:
    def test_c_one_run(self):
        text = generate("Pill", _values(*PILLS))
        assert "const char * Pill_string (Pill v, char *buf)" in text
        assert "Pill_name + Pill_index[i]" in text
        assert '"Pill(%lld)"' in text
        assert "FromString" not in text

    def test_rust_one_run(self):
        text = generate("Pill", _values(*PILLS), language="rust")
        assert "fn Pill_string (v: Pill) -> std::borrow::Cow<'static, str>" in text
        assert "#include" not in text

    def test_checks_every_declared_value(self):
        values = _values(("B", 5), ("A", 5), ("C", 1))
        text = generate("T", values)
        assert text.count("_Static_assert") == 3
        assert text.index("(K_B) - (5)") < text.index("(K_A) - (5)")

    def test_lookup_template(self):
        text = generate("Pill", _values(*PILLS), lookup="{}FromString")
        assert "int PillFromString (const char *name, Pill *v)" in text

    def test_lookup_template_rust(self):
        text = generate("Pill", _values(*PILLS), language="rust", lookup="parse_{}")
        assert "fn parse_Pill (name: &str) -> (Pill, bool)" in text

    def test_idempotent(self, shape):
        a = generate("T", shape, lookup="{}Lookup")
        b = generate("T", list(shape), lookup="{}Lookup")
        assert a == b

    def test_unsigned_single_sided_range(self):
        values = _values(("A", 0), ("B", 1), ("C", 5), ("D", 6), signed=False)
        text = generate("U", values)
        assert "if (v <= 1) {" in text
        assert "v >= 5 && v <= 6" in text
        assert '"U(%llu)"' in text

    def test_single_member_run(self):
        text = generate("T", _values(("A", 0), ("B", 1), ("C", 9)))
        assert "if (v == 9) {" in text
        assert "return T_name_1;" in text

    def test_sparse_switch(self):
        text = generate("T", _values(*SHAPES["sparse"]))
        assert "switch (v) {" in text
        assert "case 32768:" in text

    def test_reverse_shapes(self):
        values = _values(*PILLS)
        assert "switch (h)" in generate("T", values, lookup="{}L")
        text = generate("T", values, lookup="{}L", lookup_thresholds=(0, 10))
        assert "T_lookup_name" in text and "strcmp" in text
        text = generate("T", values, lookup="{}L", lookup_thresholds=(0, 0))
        assert "T_map_slot" in text

    def test_public(self):
        text = generate("T", _values(*PILLS), private=False)
        assert "extern const char T_name[]" in text

    def test_unsafe_rust(self):
        lang = LanguageRust(unsafe_array_access=True)
        text = generate("T", _values(*PILLS), language=lang)
        assert "get_unchecked" in text

    def test_empty_raises(self):
        with pytest.raises(InputError) as e:
            generate("T", [])
        assert e.value.reason == "empty"

    def test_non_integer_raises(self):
        with pytest.raises(InputError) as e:
            generate("T", [Value("A", "A", 1.0)])
        assert e.value.reason == "unsupportedKind"

    def test_internal_error_keeps_text(self, monkeypatch):
        monkeypatch.setattr(stringTab, "checkSyntax", lambda text: "line 1: boom")
        with pytest.raises(InternalInvariantError) as e:
            generate("T", _values(*PILLS))
        assert "boom" in e.value.diagnostic
        assert "T_string" in e.value.text

    def test_lookup_name(self):
        assert lookupName("{}FromString", "Pill") == "PillFromString"
        assert lookupName("lookup", "Pill") == "lookup"

    def test_guard_uses_text(self):
        values = [Value("A", "K_A", 5, text="0x5"), Value("B", "K_B", 6)]
        text = generate("T", values)
        assert "_Static_assert((K_A) - (0x5) == 0" in text
        assert "_Static_assert((K_B) - (6) == 0" in text

    def test_guard_uses_text_rust(self):
        values = [Value("A", "K_A", 5, text="0x5")]
        text = generate("T", values, language="rust")
        assert "const _: () = assert!((K_A) - (0x5) == 0);" in text

    def test_guard_default_has_suffix(self):
        values = _values(("Max", 2**64 - 1), signed=False)
        assert "(K_Max) - (18446744073709551615ULL)" in generate("U", values)


class TestGenerateAll:
    def test_failure_does_not_stop_others(self):
        outputs, failures = generate_all(
            {"Bad": [], "Good": _values(*PILLS)}, lookup="{}L"
        )
        assert list(outputs) == ["Good"]
        assert list(failures) == ["Bad"]
        assert failures["Bad"].reason == "empty"

    def test_outputs_match_generate(self):
        outputs, _ = generate_all({"T": _values(*PILLS)}, language="rust")
        assert outputs["T"] == generate("T", _values(*PILLS), language="rust")

    def test_internal_error_logged(self, monkeypatch, caplog):
        monkeypatch.setattr(stringTab, "checkSyntax", lambda text: "line 1: boom")
        with caplog.at_level(logging.WARNING, logger="stringTab"):
            outputs, failures = generate_all({"T": _values(*PILLS)})
        assert not failures
        assert "T_string" in outputs["T"]
        assert "boom" in caplog.text
        assert "warning:" not in caplog.text

    def test_shared_lookup_name_rejected(self):
        types = {"A": _values(("X", 0)), "B": _values(("Y", 1))}
        with pytest.raises(ValueError):
            generate_all(types, lookup="Parse")

    def test_fixed_lookup_name_single_type(self):
        outputs, _ = generate_all({"A": _values(("X", 0))}, lookup="Parse")
        assert outputs["A"].count("Parse (") == 1


# ── End-to-end compilation ─────────────────────────────────────────


def _expectations(values):
    """Helper: expected names per value and fallback probes."""
    signed = values[0].signed
    lo, hi = (-(2**63), 2**63 - 1) if signed else (0, 2**64 - 1)
    names = {}
    for v in values:
        names.setdefault(fromBits(v.value, signed), v.name)
    probes = set()
    for v in names:
        for p in (v - 1, v + 1):
            if p not in names and lo <= p <= hi:
                probes.add(p)
    return names, sorted(probes)[:20]


def _compile_and_run_c(code, typeName, values, lookup):
    if shutil.which("cc") is None:
        pytest.skip("no C compiler")
    lang = LanguageC()
    signed = values[0].signed
    names, probes = _expectations(values)
    lines = [
        "#include <assert.h>",
        "#include <stdint.h>",
        "typedef %s %s;" % ("int64_t" if signed else "uint64_t", typeName),
    ]
    for v in values:
        lines.append(
            "#define %s ((%s) %s)"
            % (v.reference, typeName, lang.int_literal(fromBits(v.value, signed)))
        )
    checks = []
    for value, name in sorted(names.items()):
        checks.append(
            "  assert (!strcmp (%s_string (%s, buf), %s));"
            % (typeName, lang.int_literal(value), lang.quote(name))
        )
    for p in probes:
        checks.append(
            "  assert (!strcmp (%s_string (%s, buf), %s));"
            % (typeName, lang.int_literal(p), lang.quote("%s(%d)" % (typeName, p)))
        )
    if lookup:
        func = lookupName(lookup, typeName)
        for v in distinctNames(normalize(values)):
            checks.append(
                "  assert (%s (%s, &v) && v == %s);"
                % (func, lang.quote(v.name), lang.int_literal(v.value))
            )
        checks.append('  assert (!%s ("no such name", &v));' % func)

    full = (
        "\n".join(lines)
        + "\n"
        + code
        + "\nint main (void)\n{\n"
        + "  char buf[%s_string_buf_size];\n" % typeName
        + "  %s v;\n  (void) v;\n" % typeName
        + "\n".join(checks)
        + '\n  printf ("PASS\\n");\n  return 0;\n}\n'
    )

    with tempfile.NamedTemporaryFile(suffix=".c", mode="w", delete=False) as f:
        f.write(full)
        src = f.name
    out = src.replace(".c", "")
    try:
        subprocess.check_call(
            ["cc", "-o", out, src, "-std=c11", "-Wall", "-Werror"],
            stderr=subprocess.PIPE,
        )
        result = subprocess.check_output([out]).decode().strip()
        assert result == "PASS"
    finally:
        os.unlink(src)
        if os.path.exists(out):
            os.unlink(out)


def _compile_and_run_rust(code, typeName, values, lookup):
    if shutil.which("rustc") is None:
        pytest.skip("no Rust compiler")
    lang = LanguageRust()
    signed = values[0].signed
    names, probes = _expectations(values)
    lines = [
        "#![allow(dead_code, non_upper_case_globals, non_snake_case, unused_parens,"
        " unused_comparisons, overflowing_literals)]",
        "type %s = %s;" % (typeName, "i64" if signed else "u64"),
    ]
    for v in values:
        lines.append(
            "const %s: %s = %d;" % (v.reference, typeName, fromBits(v.value, signed))
        )
    checks = []
    for value, name in sorted(names.items()):
        checks.append(
            "    assert_eq!(%s_string(%d), %s);" % (typeName, value, lang.quote(name))
        )
    for p in probes:
        checks.append(
            "    assert_eq!(%s_string(%d), %s);"
            % (typeName, p, lang.quote("%s(%d)" % (typeName, p)))
        )
    if lookup:
        func = lookupName(lookup, typeName)
        for v in distinctNames(normalize(values)):
            checks.append(
                "    assert_eq!(%s(%s), (%d, true));" % (func, lang.quote(v.name), v.value)
            )
        checks.append('    assert_eq!(%s("no such name").1, false);' % func)

    full = (
        "\n".join(lines)
        + "\n"
        + code
        + "\nfn main() {\n"
        + "\n".join(checks)
        + '\n    println!("PASS");\n}\n'
    )

    with tempfile.NamedTemporaryFile(suffix=".rs", mode="w", delete=False) as f:
        f.write(full)
        src = f.name
    out = src.replace(".rs", "")
    try:
        subprocess.check_call(["rustc", "-o", out, src], stderr=subprocess.PIPE)
        result = subprocess.check_output([out]).decode().strip()
        assert result == "PASS"
    finally:
        os.unlink(src)
        if os.path.exists(out):
            os.unlink(out)


def _compile_and_run(typeName, values, language, lookup="{}FromString", **kwargs):
    """Generate, compile and run for the given language."""
    code = generate(typeName, values, language=language, lookup=lookup, **kwargs)
    if language == "c":
        _compile_and_run_c(code, typeName, values, lookup)
    elif language == "rust":
        _compile_and_run_rust(code, typeName, values, lookup)
    else:
        raise ValueError("Unknown language: %s" % language)


@pytest.fixture(params=["c", "rust"])
def language(request):
    return request.param


class TestEndToEnd:
    """Generate code, compile, and verify correctness for both C and Rust."""

    def test_one_run(self, language):
        _compile_and_run("Pill", _values(*PILLS), language)

    def test_negative_run(self, language):
        _compile_and_run("T", _values(*SHAPES["negative_run"]), language)

    def test_multi_run(self, language):
        _compile_and_run("T", _values(*SHAPES["multi_run"]), language)

    def test_multi_run_unsigned(self, language):
        values = _values(("A", 0), ("B", 1), ("C", 5), ("D", 6), signed=False)
        _compile_and_run("U", values, language)

    def test_sparse(self, language):
        _compile_and_run("Flags", _values(*SHAPES["sparse"]), language)

    def test_duplicates(self, language):
        values = _values(("B", 5), ("A", 5), ("C", 6))
        _compile_and_run("T", values, language)

    def test_extremes_signed(self, language):
        values = _values(("Min", -(2**63)), ("Zero", 0), ("Max", 2**63 - 1))
        _compile_and_run("T", values, language)

    def test_extremes_unsigned(self, language):
        values = _values(("Zero", 0), ("Big", 2**63), ("Max", 2**64 - 1), signed=False)
        _compile_and_run("U", values, language)

    def test_escaped_names(self, language):
        names = ['say "hi"', "back\\slash", "é??=", ""]
        values = [Value(name, "K_%d" % i, i) for i, name in enumerate(names)]
        _compile_and_run("T", values, language)

    def test_hash_collision(self, language):
        a, b = _fnv_collision()
        _compile_and_run("T", _values((a, 1), (b, 2)), language)

    def test_binary_search(self, language):
        _compile_and_run("T", _numbered(40), language, lookup_thresholds=(0, 100))

    def test_direct_map(self, language):
        _compile_and_run("T", _numbered(40), language, lookup_thresholds=(0, 0))

    def test_large_blob(self, language):
        values = _values(*[("Long%03d" % i + "x" * 40, i) for i in range(30)])
        _compile_and_run("T", values, language)

    def test_hex_text(self, language):
        values = [Value("A", "K_A", 16, text="0x10"), Value("B", "K_B", 17)]
        _compile_and_run("T", values, language)


# ── CLI ────────────────────────────────────────────────────────────


class TestCLI:
    def _run(self, *args, input=None):
        result = subprocess.run(
            [sys.executable, "-m", "stringTab", *args],
            capture_output=True,
            text=True,
            input=input,
            cwd=os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
        )
        return result

    def test_no_type_shows_usage(self):
        r = self._run("A=1")
        assert r.returncode != 0
        assert "usage" in r.stderr.lower()

    def test_c_output(self):
        r = self._run("--type", "Pill", "PLACEBO=0", "ASPIRIN=1")
        assert r.returncode == 0
        assert "#include" in r.stdout
        assert "Pill_string" in r.stdout
        assert '"PLACEBO\\000ASPIRIN\\000"' in r.stdout

    def test_rust_output(self):
        r = self._run("--rust", "--type", "Pill", "PLACEBO=0", "ASPIRIN=1")
        assert r.returncode == 0
        assert "fn Pill_string" in r.stdout
        assert "#include" not in r.stdout

    def test_trim_prefix_and_lookup(self):
        r = self._run(
            "--type",
            "Pill",
            "--trim-prefix",
            "PILL_",
            "--lookup",
            "{}FromString",
            "PILL_A=0",
            "PILL_B=1",
        )
        assert r.returncode == 0
        assert "PillFromString" in r.stdout
        assert '"A"' in r.stdout
        assert "(PILL_A) - (0)" in r.stdout

    def test_display_override(self):
        r = self._run("--type", "Pill", "A=0:Alpha", "B=1")
        assert r.returncode == 0
        assert "Alpha" in r.stdout

    def test_multiple_types(self):
        r = self._run("--type", "A,B", "A.X=0", "B.Y=1", "C.Z=2")
        assert r.returncode == 0
        assert "A_string" in r.stdout
        assert "B_string" in r.stdout
        assert "C_string" not in r.stdout

    def test_missing_type_fails_but_others_generate(self):
        r = self._run("--type", "A,B", "A.X=0")
        assert r.returncode == 1
        assert "A_string" in r.stdout
        assert "B" in r.stderr

    def test_stdin(self):
        r = self._run("--type", "T", input="X=1\nY=2\n")
        assert r.returncode == 0
        assert "T_string" in r.stdout

    def test_input_file(self, tmp_path):
        path = tmp_path / "consts.txt"
        path.write_text("X=1 Y=2\n")
        r = self._run("--type", "T", "-i", str(path))
        assert r.returncode == 0
        assert "T_string" in r.stdout

    def test_output_file(self, tmp_path):
        path = tmp_path / "out.c"
        r = self._run("--type", "T", "-o", str(path), "X=1")
        assert r.returncode == 0
        assert "T_string" in path.read_text()

    def test_invalid_constant(self):
        r = self._run("--type", "T", "X")
        assert r.returncode != 0
        assert "invalid constant" in r.stderr

    def test_lookup_without_placeholder_for_many_types(self):
        r = self._run("--type", "A,B", "--lookup", "Parse", "A.X=0", "B.Y=1")
        assert r.returncode != 0
        assert "--lookup needs {}" in r.stderr

    def test_invalid_thresholds(self):
        r = self._run("--type", "T", "--lookup-thresholds", "9,1", "X=1")
        assert r.returncode != 0

    def test_analyze(self):
        r = self._run("--type", "T", "--analyze", "A=1", "B=2", "C=9")
        assert r.returncode == 0
        assert "2 runs" in r.stdout
        assert "MultiRun" in r.stdout
        assert "HashedSwitch" in r.stdout

    def test_help(self):
        r = self._run("--help")
        assert r.returncode == 0
        assert "stringTab" in r.stdout

    def test_main_in_process(self, capsys):
        assert main(["--type", "T", "--language", "rust", "A=1"]) == 0
        assert "fn T_string" in capsys.readouterr().out


class TestParseConstant:
    def test_plain(self):
        assert parse_constant("A=1", ["T"]) == ("T", "A", 1, "A")

    def test_hex_and_negative(self):
        assert parse_constant("A=0x1f", ["T"])[2] == 31
        assert parse_constant("A=-3", ["T"])[2] == -3

    def test_needs_prefix_with_many_types(self):
        with pytest.raises(ValueError):
            parse_constant("A=1", ["T", "U"])
