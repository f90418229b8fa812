import io
import os
import shutil
import subprocess
import sys
import tempfile

import pytest

from nameTab import (
    Code,
    ConstantValue,
    EmptyInputError,
    InvalidConfigurationError,
    InvalidConstantNameError,
    Kind,
    LanguageC,
    LanguageRust,
    MAX_RUNS,
    NameTabError,
    Options,
    Run,
    Strategy,
    TypeDeclaration,
    UnsupportedConstantKindError,
    build_layout,
    indexBitsFor,
    isPow2,
    languageClasses,
    normalize,
    pack_all,
    pack_names,
    select_strategy,
    split_into_runs,
    toSigned,
    typeWidth,
)
from nameTab.constdecl import (
    DeclarationSyntaxError,
    load_declarations,
    parse_text,
    parse_xml,
)
from nameTab.__main__ import main

MASK64 = (1 << 64) - 1


def cv(name, value, signed=True, **kwargs):
    return ConstantValue(name, value, signed, **kwargs)


PILL = [
    cv("Placebo", 0),
    cv("Aspirin", 1),
    cv("Ibuprofen", 2),
    cv("Paracetamol", 3),
    cv("Acetaminophen", 3),
]

PERM = [cv("Read", 1, False), cv("Write", 2, False), cv("Exec", 4, False)]


def _gapped(n, step=2):
    """n enum runs of one value each."""
    return [cv("V%d" % i, step * i) for i in range(n)]


def _spreadBits(n):
    """n flag runs of one bit each."""
    return [cv("B%d" % i, 1 << (2 * i), False) for i in range(n)]


# ── Value model ────────────────────────────────────────────────────


class TestIsPow2:
    def test_zero(self):
        assert isPow2(0)

    def test_bits(self):
        for i in range(64):
            assert isPow2(1 << i)

    def test_composite(self):
        assert not isPow2(3)
        assert not isPow2(MASK64)


class TestIndexBitsFor:
    def test_widths(self):
        assert indexBitsFor(0) == 8
        assert indexBitsFor(255) == 8
        assert indexBitsFor(256) == 16
        assert indexBitsFor(65535) == 16
        assert indexBitsFor(65536) == 32


class TestToSigned:
    def test_positive(self):
        assert toSigned(7) == 7

    def test_negative(self):
        assert toSigned(MASK64) == -1
        assert toSigned(1 << 63) == -(1 << 63)


class TestTypeWidth:
    def test_types(self):
        assert typeWidth("uint16_t") == 16
        assert typeWidth("u64") == 64


class TestConstantValue:
    def test_negative_is_masked(self):
        c = cv("A", -1)
        assert c.rawValue == MASK64
        assert c.value == -1
        assert c.literalText == "-1"

    def test_unsigned_interpretation(self):
        c = cv("A", -1, signed=False)
        assert c.value == MASK64
        assert c.literalText == str(MASK64)

    def test_display_name_defaults_to_name(self):
        assert cv("A", 1).displayName == "A"
        assert cv("A", 1, displayName="a").displayName == "a"

    def test_literal_text_kept(self):
        assert cv("A", 16, literalText="0x10").literalText == "0x10"

    def test_rejects_non_integers(self):
        for bad in (1.5, "1", None, True):
            with pytest.raises(UnsupportedConstantKindError) as e:
                cv("A", bad)
            assert e.value.constantName == "A"
            assert isinstance(e.value, TypeError)

    def test_rejects_out_of_range(self):
        with pytest.raises(UnsupportedConstantKindError):
            cv("A", 1 << 64)
        with pytest.raises(UnsupportedConstantKindError):
            cv("A", -(1 << 63) - 1)

    def test_rejects_blank_name(self):
        with pytest.raises(ValueError):
            cv("_", 1)
        with pytest.raises(ValueError):
            cv("", 1)

    def test_blank_name_error(self):
        with pytest.raises(InvalidConstantNameError) as e:
            cv("_", 1)
        assert e.value.constantName == "_"
        assert isinstance(e.value, NameTabError)

    def test_equality(self):
        assert cv("A", 1) == cv("A", 1)
        assert cv("A", 1) != cv("A", 1, signed=False)
        assert len({cv("A", 1), cv("A", 1)}) == 1


class TestOptions:
    def test_defaults(self):
        o = Options()
        assert o.displayName("PillAspirin") == "PillAspirin"

    def test_trim_prefix(self):
        o = Options(trimPrefix="Pill")
        assert o.displayName("PillAspirin") == "Aspirin"
        assert o.displayName("Other") == "Other"

    def test_annotation(self):
        o = Options(trimPrefix="Pill", useAnnotationName=True)
        assert o.displayName("PillAspirin", " aspirin ") == "aspirin"
        assert o.displayName("PillAspirin", "   ") == "Aspirin"
        assert o.displayName("PillAspirin", None) == "Aspirin"

    def test_annotation_ignored_unless_enabled(self):
        assert Options().displayName("A", "a") == "A"

    def test_from_dict(self):
        o = Options.fromDict({"trimPrefix": "X", "useAnnotationName": True})
        assert o.trimPrefix == "X"
        assert o.useAnnotationName

    def test_from_dict_unknown_key(self):
        with pytest.raises(InvalidConfigurationError) as e:
            Options.fromDict({"trim_prefix": "X"})
        assert e.value.key == "trim_prefix"
        assert isinstance(e.value, ValueError)

    def test_bad_types(self):
        with pytest.raises(InvalidConfigurationError):
            Options(trimPrefix=3)
        with pytest.raises(InvalidConfigurationError):
            Options(useAnnotationName="yes")

    def test_constant(self):
        c = Options(trimPrefix="Pill").constant("PillAspirin", 1)
        assert c.originalName == "PillAspirin"
        assert c.displayName == "Aspirin"


# ── Normalizer ─────────────────────────────────────────────────────


class TestNormalize:
    def test_first_declared_wins(self):
        out = normalize([cv("A", 1), cv("B", 1), cv("C", 2)])
        assert [v.originalName for v in out] == ["A", "C"]

    def test_alias_declared_first_wins_after_sort(self):
        out = normalize([cv("C", 2), cv("B", 1), cv("A", 1)])
        assert [v.originalName for v in out] == ["B", "C"]

    def test_signed_order(self):
        out = normalize([cv("A", 5), cv("B", -1), cv("C", 0)])
        assert [v.value for v in out] == [-1, 0, 5]

    def test_unsigned_order(self):
        out = normalize([cv("A", 5, False), cv("B", -1, False), cv("C", 0, False)])
        assert [v.originalName for v in out] == ["C", "A", "B"]

    def test_flags_drop_composites(self):
        out = normalize([cv("A", 1), cv("B", 3), cv("C", 4)], Kind.FLAG)
        assert [v.originalName for v in out] == ["A", "C"]

    def test_flags_keep_zero(self):
        out = normalize([cv("None", 0), cv("A", 1)], Kind.FLAG)
        assert [v.originalName for v in out] == ["None", "A"]

    def test_enum_keeps_composites(self):
        out = normalize([cv("A", 1), cv("B", 3)], Kind.ENUM)
        assert len(out) == 2

    def test_empty(self):
        with pytest.raises(EmptyInputError) as e:
            normalize([], typeName="Pill")
        assert e.value.typeName == "Pill"
        assert "Pill" in str(e.value)
        assert isinstance(e.value, ValueError)

    def test_empty_after_filtering(self):
        with pytest.raises(EmptyInputError):
            normalize([cv("A", 3), cv("B", 6)], Kind.FLAG, "Mask")

    def test_tuples(self):
        out = normalize([("B", 2), ("A", 1, False)])
        assert [v.originalName for v in out] == ["A", "B"]

    def test_bad_value_names_type(self):
        with pytest.raises(UnsupportedConstantKindError) as e:
            normalize([("A", 1.5)], typeName="Pill")
        assert e.value.typeName == "Pill"
        assert "Pill" in str(e.value)

    def test_blank_name_names_type(self):
        with pytest.raises(InvalidConstantNameError) as e:
            normalize([("", 1)], typeName="Pill")
        assert e.value.typeName == "Pill"
        assert "Pill" in str(e.value)


# ── Run splitter ───────────────────────────────────────────────────


class TestSplitIntoRuns:
    def _split(self, values, kind=Kind.ENUM, signed=True):
        values = normalize([cv("V%d" % i, v, signed) for i, v in enumerate(values)], kind)
        return [[v.value for v in run] for run in split_into_runs(values, kind)]

    def test_enum(self):
        assert self._split([1, 2, 3, 5, 6, 7]) == [[1, 2, 3], [5, 6, 7]]

    def test_enum_single(self):
        assert self._split([4]) == [[4]]

    def test_enum_negative(self):
        assert self._split([-2, -1, 0, 1]) == [[-2, -1, 0, 1]]

    def test_enum_unsigned_top(self):
        assert self._split([MASK64 - 1, MASK64, 0], signed=False) == [
            [0],
            [MASK64 - 1, MASK64],
        ]

    def test_flags(self):
        assert self._split([0, 1, 2, 8, 16], Kind.FLAG) == [[0, 1, 2], [8, 16]]

    def test_flags_zero_leads(self):
        assert self._split([0, 4, 8], Kind.FLAG) == [[0, 4, 8]]

    def test_lone_zero(self):
        assert self._split([0], Kind.FLAG) == [[0]]

    def test_signed_top_bit(self):
        assert self._split([1 << 62, -(1 << 63), 1], Kind.FLAG) == [
            [-(1 << 63)],
            [1],
            [1 << 62],
        ]

    def test_empty(self):
        assert split_into_runs([]) == []

    def test_coverage(self):
        values = normalize(
            [cv("V%d" % i, v) for i, v in enumerate([9, 3, 4, 5, 20, 21, -7, 100])]
        )
        runs = split_into_runs(values)
        assert [v for run in runs for v in run] == values

    def test_run_blob_and_offsets(self):
        run = Run([cv("Placebo", 0), cv("Aspirin", 1)])
        assert run.blob == "PlaceboAspirin"
        assert run.offsets == [0, 7, 14]
        assert run.needsIndex
        assert run.name(1) == "Aspirin"
        assert run.first.originalName == "Placebo"
        assert run.last.originalName == "Aspirin"

    def test_offsets_are_utf8_bytes(self):
        run = Run([cv("A", 0, displayName="é"), cv("B", 1, displayName="x")])
        assert run.offsets == [0, 2, 3]
        assert run.name(0) == "é"

    def test_singleton_needs_no_index(self):
        assert not Run([cv("A", 0)]).needsIndex


# ── Strategy selector ──────────────────────────────────────────────


class TestSelectStrategy:
    def _strategy(self, values, kind=Kind.ENUM):
        values = normalize(values, kind)
        return select_strategy(split_into_runs(values, kind), kind)

    def test_single_run(self):
        assert self._strategy(PILL) is Strategy.SINGLE_RUN

    def test_multi_run(self):
        assert self._strategy(_gapped(2)) is Strategy.MULTI_RUN_SWITCH

    def test_boundary(self):
        assert MAX_RUNS == 8
        assert self._strategy(_gapped(8)) is Strategy.MULTI_RUN_SWITCH
        assert self._strategy(_gapped(9)) is Strategy.SPARSE_MAP

    def test_flags(self):
        assert self._strategy(PERM, Kind.FLAG) is Strategy.MULTI_RUN_FLAG_DECOMPOSE
        assert self._strategy(_spreadBits(8), Kind.FLAG) is Strategy.MULTI_RUN_FLAG_DECOMPOSE
        assert self._strategy(_spreadBits(9), Kind.FLAG) is Strategy.SPARSE_MAP

    def test_no_runs(self):
        with pytest.raises(ValueError):
            select_strategy([])


# ── Layout builder ─────────────────────────────────────────────────


class TestLayout:
    def test_index_bits_small(self):
        layout = build_layout(split_into_runs(normalize(PILL)))
        assert layout.indexBits == 8

    def test_index_bits_follow_largest_indexed_run(self):
        values = [cv("A", 0, displayName="a" * 200), cv("B", 1, displayName="b" * 200)]
        layout = build_layout(split_into_runs(normalize(values)))
        assert layout.indexBits == 16

    def test_singletons_ignore_long_names(self):
        values = [cv("A", 0, displayName="a" * 300), cv("B", 5, displayName="b" * 300)]
        layout = build_layout(split_into_runs(normalize(values)))
        assert layout.strategy is Strategy.MULTI_RUN_SWITCH
        assert layout.indexBits == 8

    def test_sparse_table(self):
        values = normalize(_gapped(9, step=10))
        layout = build_layout(split_into_runs(values))
        assert layout.strategy is Strategy.SPARSE_MAP
        assert layout.blob == "".join("V%d" % i for i in range(9))
        assert list(layout.table) == [10 * i for i in range(9)]
        assert layout.table[0] == (0, 2)
        assert layout.table[80] == (16, 18)
        assert layout.name(30) == "V3"


# ── Decoder ────────────────────────────────────────────────────────


class TestDecodeEnum:
    def test_single_run(self):
        table = pack_names("Pill", PILL)
        assert table.strategy is Strategy.SINGLE_RUN
        assert table.decode(0) == "Placebo"
        assert table.decode(3) == "Paracetamol"
        assert table.decode(4) == "Pill(4)"
        assert table.decode(-1) == "Pill(-1)"

    def test_offset_run(self):
        table = pack_names("T", [cv("Ten", 10), cv("Eleven", 11), cv("Twelve", 12)])
        (branch,) = table.decoder.branches
        assert branch.subtract
        assert branch.first == 10
        assert branch.count == 3
        assert table.decode(11) == "Eleven"
        assert table.decode(13) == "T(13)"
        assert table.decode(9) == "T(9)"

    def test_zero_based_run_compares_directly(self):
        (branch,) = pack_names("Pill", PILL).decoder.branches
        assert not branch.subtract

    def test_unsigned_fallback(self):
        table = pack_names("U", [cv("A", 1, False)])
        assert table.decode(-1) == "U(%d)" % MASK64

    def test_negative_run(self):
        table = pack_names("S", [cv("M", -1), cv("Z", 0), cv("P", 1)])
        assert table.decode(-1) == "M"
        assert table.decode(-2) == "S(-2)"
        assert table.decode(2) == "S(2)"

    def test_multi_run(self):
        values = [cv("A", 1), cv("B", 2), cv("C", 3), cv("D", 10), cv("E", 20), cv("F", 21)]
        table = pack_names("T", values)
        assert table.strategy is Strategy.MULTI_RUN_SWITCH
        assert [b.count for b in table.decoder.branches] == [3, 1, 2]
        for v in values:
            assert table.decode(v.value) == v.originalName
        assert table.decode(4) == "T(4)"
        assert table.decode(0) == "T(0)"

    def test_sparse(self):
        values = _gapped(12, step=10)
        table = pack_names("T", values)
        assert table.strategy is Strategy.SPARSE_MAP
        assert table.decoder.branches == []
        for v in values:
            assert table.decode(v.value) == v.originalName
        assert table.decode(5) == "T(5)"

    def test_round_trip(self):
        values = [cv("V%d" % i, v) for i, v in enumerate([-5, -4, 0, 1, 2, 7, 1 << 40])]
        table = pack_names("T", values)
        for v in values:
            assert table.decode(v.value) == v.displayName

    def test_display_names(self):
        o = Options(trimPrefix="Pill")
        table = pack_names("Pill", [o.constant("PillA", 0), o.constant("PillB", 1)])
        assert table.decode(1) == "B"

    def test_rejects_non_int(self):
        with pytest.raises(TypeError):
            pack_names("Pill", PILL).decode("1")

    def test_checks_keep_aliases(self):
        table = pack_names("Pill", PILL)
        assert table.decoder.checks == [
            ("Placebo", "0"),
            ("Aspirin", "1"),
            ("Ibuprofen", "2"),
            ("Paracetamol", "3"),
            ("Acetaminophen", "3"),
        ]

    def test_kind_by_value(self):
        assert pack_names("Perm", PERM, "flags").kind is Kind.FLAG

    def test_unknown_kind(self):
        with pytest.raises(InvalidConfigurationError) as e:
            pack_names("Perm", PERM, "flag")
        assert e.value.key == "kind"
        assert "Perm" in str(e.value)
        assert "'flag'" in str(e.value)


class TestDecodeFlags:
    def test_combinations(self):
        table = pack_names("Perm", PERM, Kind.FLAG)
        assert table.decode(3) == ["Read", "Write"]
        assert table.string(3) == "Read+Write"
        assert table.string(7) == "Read+Write+Exec"

    def test_residual(self):
        table = pack_names("Perm", PERM, Kind.FLAG)
        assert table.decode(8) == ["Perm(8)"]
        assert table.decode(9) == ["Read", "Perm(8)"]
        assert table.string(0x30 | 4) == "Exec+Perm(48)"

    def test_zero_without_constant(self):
        table = pack_names("Perm", PERM, Kind.FLAG)
        assert table.decode(0) == []
        assert table.string(0) == ""
        assert table.decoder.zero is None

    def test_zero_constant(self):
        table = pack_names("Perm", [cv("None", 0, False)] + PERM, Kind.FLAG)
        assert table.decode(0) == ["None"]
        assert table.string(5) == "Read+Exec"

    def test_lone_zero(self):
        table = pack_names("Empty", [cv("None", 0, False)], Kind.FLAG)
        assert table.string(0) == "None"
        assert table.string(2) == "Empty(2)"

    def test_composite_constants_dropped(self):
        values = [cv("A", 1), cv("AB", 3), cv("C", 4)]
        table = pack_names("F", values, Kind.FLAG)
        assert table.decode(3) == ["A", "F(2)"]
        assert table.decoder.checks == [("A", "1"), ("C", "4")]

    def test_bit_order_not_sort_order(self):
        values = [cv("High", -(1 << 63)), cv("Low", 1)]
        table = pack_names("F", values, Kind.FLAG)
        assert [f.value.originalName for f in table.decoder.flags] == ["Low", "High"]
        assert table.decode(-(1 << 63) | 1) == ["Low", "High"]

    def test_signed_residual(self):
        table = pack_names("F", [cv("Low", 1)], Kind.FLAG)
        assert table.decode(-1) == ["Low", "F(-2)"]

    def test_sparse(self):
        values = [cv("None", 0, False)] + _spreadBits(10)
        table = pack_names("Wide", values, Kind.FLAG)
        assert table.strategy is Strategy.SPARSE_MAP
        assert table.decode(0) == ["None"]
        assert table.string(1 | (1 << 18)) == "B0+B9"
        assert table.string(2 | 4) == "B1+Wide(2)"

    def test_round_trip(self):
        values = [cv("F%d" % i, 1 << i, False) for i in (0, 1, 2, 5, 6, 30, 63)]
        table = pack_names("F", values, Kind.FLAG)
        for mask in range(1 << len(values)):
            chosen = [v for i, v in enumerate(values) if mask & (1 << i)]
            value = 0
            for v in chosen:
                value |= v.rawValue
            assert table.decode(value) == [v.originalName for v in chosen]


class TestDeterminism:
    def test_same_output(self):
        values = _gapped(5) + [cv("Big", 1 << 40)]
        a = _generate("T", values)
        b = _generate("T", list(values))
        assert a == b

    def test_same_layout(self):
        a = pack_names("Pill", PILL).layout
        b = pack_names("Pill", PILL).layout
        assert [(r.blob, r.offsets) for r in a.runs] == [(r.blob, r.offsets) for r in b.runs]


class TestPackAll:
    def _declarations(self):
        return [
            TypeDeclaration("Pill", PILL),
            TypeDeclaration("Empty", []),
            TypeDeclaration("Perm", PERM, Kind.FLAG),
        ]

    def test_errors_do_not_stop_others(self):
        results = pack_all(self._declarations())
        assert [r.typeName for r in results] == ["Pill", "Empty", "Perm"]
        assert results[0].ok and results[2].ok
        assert not results[1].ok
        assert isinstance(results[1].error, EmptyInputError)
        assert results[1].error.typeName == "Empty"
        assert results[2].table.string(3) == "Read+Write"

    def test_workers_keep_order(self):
        declarations = [TypeDeclaration("T%d" % i, _gapped(i + 1)) for i in range(20)]
        results = pack_all(declarations, workers=4)
        assert [r.typeName for r in results] == ["T%d" % i for i in range(20)]
        assert all(r.ok for r in results)

    def test_unsupported_value(self):
        (result,) = pack_all([TypeDeclaration("Bad", [("A", 2.5)])])
        assert isinstance(result.error, UnsupportedConstantKindError)
        assert isinstance(result.error, NameTabError)

    def test_blank_name_fails_one_type(self):
        results = pack_all(
            [
                TypeDeclaration("Bad", [("_", 1)]),
                TypeDeclaration("Pill", PILL),
            ]
        )
        assert isinstance(results[0].error, InvalidConstantNameError)
        assert results[0].error.typeName == "Bad"
        assert results[1].ok

    def test_unknown_kind_fails_one_type(self):
        results = pack_all(
            [
                TypeDeclaration("Perm", PERM, "flag"),
                TypeDeclaration("Pill", PILL),
            ]
        )
        assert isinstance(results[0].error, InvalidConfigurationError)
        assert results[1].ok


# ── Languages ──────────────────────────────────────────────────────


class TestLanguageC:
    def setup_method(self):
        self.lang = LanguageC()

    def test_type_name(self):
        assert self.lang.type_name("u8") == "uint8_t"
        assert self.lang.type_name("i64") == "int64_t"

    def test_uint_literal(self):
        assert self.lang.uint_literal(5, "uint64_t") == "5ULL"

    def test_string_literal(self):
        assert self.lang.string_literal("a?b") == '"a\\?b"'
        assert self.lang.string_literal("tab\t") == '"tab\\011"'

    def test_declare_array(self):
        assert (
            self.lang.declare_array("static const", "uint8_t", "x", 3)
            == "static const uint8_t x[3]"
        )

    def test_declare_function(self):
        decl = self.lang.declare_function(
            "static inline", "int", "f", (("int64_t", "i"), ("char *", "buf"))
        )
        assert decl == "static inline int f (int64_t i, char *buf)"

    def test_wrapping_sub(self):
        assert self.lang.wrapping_sub("u", "2ULL") == "u-2ULL"

    def test_check(self):
        assert self.lang.check("A", "1", True) == (
            "typedef char A_check[((A) == 1LL) ? 1 : -1];"
        )
        assert "== 3ULL)" in self.lang.check("B", "3", False)

    def test_check_literals(self):
        assert self.lang.check_literal("-9223372036854775808", True) == (
            "(-9223372036854775807LL-1)"
        )
        assert self.lang.check_literal("9223372036854775807", True) == (
            "9223372036854775807LL"
        )
        assert self.lang.check_literal("18446744073709551615", False) == (
            "18446744073709551615ULL"
        )
        assert self.lang.check_literal("0x20", False) == "32ULL"
        assert self.lang.check_literal("1 << 5", True) == "(1 << 5)"

    def test_check_is_c99(self):
        assert "_Static_assert" not in self.lang.check("A", "1", True)


class TestLanguageRust:
    def setup_method(self):
        self.lang = LanguageRust()

    def test_type_name(self):
        assert self.lang.type_name("u16") == "u16"

    def test_uint_literal(self):
        assert self.lang.uint_literal(5, "u64") == "5u64"

    def test_as_usize(self):
        assert self.lang.as_usize("u") == "(u) as usize"
        assert self.lang.as_usize("3") == "3usize"

    def test_array_index(self):
        assert self.lang.array_index("t", "i") == "t[i]"
        unsafe = LanguageRust(unsafe_array_access=True)
        assert unsafe.array_index("t", "i") == "unsafe { *(t.get_unchecked(i)) }"

    def test_declare_function(self):
        decl = self.lang.declare_function("", "String", "f", (("i64", "i"),))
        assert decl == "fn f (i: i64) -> String"

    def test_string_literal(self):
        assert self.lang.string_literal('"\n') == '"\\"\\u{a}"'
        assert self.lang.string_literal("é") == '"é"'

    def test_check(self):
        assert self.lang.check("A", "-1", True) == (
            "const _: () = assert!((A) as i128 == -1i128);"
        )

    def test_check_literals(self):
        assert self.lang.check_literal("-9223372036854775808", True) == (
            "-9223372036854775808i128"
        )
        assert self.lang.check_literal("18446744073709551615", False) == (
            "18446744073709551615i128"
        )
        assert self.lang.check_literal("1 << 5", True) == "((1 << 5) as i128)"


class TestCode:
    def test_name_for(self):
        assert Code().nameFor("x") == "x"
        assert Code("ns").nameFor("x") == "ns_x"

    def test_duplicate_symbols(self):
        code = Code()
        code.addString("x", "abc")
        with pytest.raises(ValueError):
            code.addArray("uint8_t", "x", [1])

    def test_duplicate_types(self):
        code = Code()
        pack_names("Pill", PILL).genCode(code)
        with pytest.raises(ValueError):
            pack_names("Pill", PILL).genCode(code)

    def test_repeated_check(self):
        code = Code()
        code.addCheck("A", "1", True)
        code.addCheck("A", "1", True)
        assert code.checks == [("A", "1", True)]

    def test_print_order(self):
        code = Code()
        pack_names("Pill", PILL).genCode(code, checks=True)
        buf = io.StringIO()
        code.print_code(file=buf)
        out = buf.getvalue()
        assert out.index("#include <inttypes.h>") < out.index("Pill_name[]")
        assert out.index("Pill_name[]") < out.index("Pill_index[5]")
        assert out.index("Pill_index[5]") < out.index("Pill_string")
        assert out.index("Pill_string") < out.index("Placebo_check")


# ── Code generation ────────────────────────────────────────────────


def _generate(typeName, values, kind=Kind.ENUM, language="c", namespace="", checks=False, **lang_kwargs):
    """Helper: pack values and generate code as a string."""
    table = pack_names(typeName, values, kind)
    lang = languageClasses[language](**lang_kwargs)
    code = Code(namespace)
    table.genCode(code, language=lang, checks=checks)
    buf = io.StringIO()
    code.print_code(file=buf, language=lang)
    return buf.getvalue()


class TestGenCode:
    def test_single_run_from_zero(self):
        out = _generate("Pill", PILL)
        assert 'static const char Pill_name[] = "PlaceboAspirinIbuprofenParacetamol";' in out
        assert "static const uint8_t Pill_index[5]" in out
        assert "uint64_t u = (uint64_t)(i);" in out
        assert "u >= 4ULL" in out
        assert "Acetaminophen" not in out

    def test_single_run_subtracts_first(self):
        values = [cv("Ten", 10), cv("Eleven", 11), cv("Twelve", 12)]
        assert "(uint64_t)(i)-10ULL" in _generate("T", values)
        assert "((i) as u64).wrapping_sub(10u64)" in _generate("T", values, language="rust")

    def test_signed_and_unsigned_parameters(self):
        assert "Pill_string (int64_t i, char *buf, size_t n)" in _generate("Pill", PILL)
        out = _generate("Perm", PERM, Kind.FLAG)
        assert "Perm_string (uint64_t i, char *buf, size_t n)" in out
        assert "PRIu64" in out

    def test_multi_run(self):
        values = [cv("A", 1), cv("B", 2), cv("C", 7)]
        out = _generate("T", values)
        assert "T_name_0[]" in out
        assert "T_index_0[3]" in out
        assert "T_name_1[]" in out
        assert "T_index_1" not in out
        assert "u == 7ULL" in out

    def test_wide_index(self):
        values = [cv("A", 0, displayName="a" * 200), cv("B", 1, displayName="b" * 200)]
        assert "uint16_t Pill_index[3]" in _generate("Pill", values)
        assert "Pill_index: [u16; 3]" in _generate("Pill", values, language="rust")

    def test_sparse(self):
        out = _generate("T", _gapped(9, step=10))
        assert "uint64_t T_keys[9]" in out
        assert "T_slices[18]" in out
        assert "while (lo < hi)" in out
        rust = _generate("T", _gapped(9, step=10), language="rust")
        assert "T_keys.binary_search(&u)" in rust

    def test_flags_c(self):
        out = _generate("Perm", PERM, Kind.FLAG)
        assert "static inline int Perm_append" in out
        assert "if (u & 2ULL) {" in out
        assert "u &= ~2ULL;" in out

    def test_flags_rust(self):
        out = _generate("Perm", PERM, Kind.FLAG, language="rust")
        assert "fn Perm_flags (i: u64) -> Vec<String>" in out
        assert 'return Perm_flags(i).join("+");' in out
        assert "if (u & 2u64) != 0 {" in out
        assert "#[inline]" in out

    def test_namespace(self):
        out = _generate("Pill", PILL, namespace="drugs")
        assert "drugs_Pill_string" in out
        assert "drugs_Pill_name" in out

    def test_unsafe_rust(self):
        out = _generate("Pill", PILL, language="rust", unsafe_array_access=True)
        assert "get_unchecked" in out

    def test_checks(self):
        out = _generate("Pill", PILL, checks=True)
        assert "typedef char Acetaminophen_check[((Acetaminophen) == 3LL) ? 1 : -1];" in out
        out = _generate("Pill", PILL, language="rust", checks=True)
        assert "const _: () = assert!((Placebo) as i128 == 0i128);" in out

    def test_no_checks_by_default(self):
        assert "typedef char" not in _generate("Pill", PILL)

    def test_rust_has_no_includes(self):
        assert "#include" not in _generate("Pill", PILL, language="rust")


# ── End-to-end code generation ─────────────────────────────────────


def _sample_values(table):
    values = {0, 1, 2, MASK64, 1 << 63, (1 << 63) - 1, 12345}
    for v in table.layout.values:
        for d in (-1, 0, 1):
            values.add((v.rawValue + d) & MASK64)
    if table.kind is Kind.FLAG:
        bits = [f.bit for f in table.decoder.flags]
        everything = 0
        for b in bits:
            everything |= b
        values.add(everything)
        values.add(everything | (1 << 41))
        for b in bits:
            values.add(b | (1 << 41))
    return sorted(values)


def _compile_and_run_c(c_code, table, cases, bufsize=256, prelude=""):
    """Compile generated C and verify every sample decodes like the reference."""
    lang = LanguageC()
    vt = "int64_t" if table.decoder.signed else "uint64_t"
    checks = []
    for value, expected in cases:
        full = len(expected.encode("utf-8"))
        shown = expected.encode("utf-8")[: bufsize - 1].decode("utf-8")
        checks.append(
            "  r = %s_string ((%s) %dULL, buf, sizeof buf);" % (table.typeName, vt, value)
        )
        checks.append(
            "  assert (r == %d && strcmp (buf, %s) == 0);" % (full, lang.string_literal(shown))
        )

    full = (
        "#include <assert.h>\n"
        "#include <string.h>\n"
        + prelude
        + c_code
        + "\nint main (void) {\n  char buf[%d];\n  int r;\n" % bufsize
        + "\n".join(checks)
        + '\n  printf("PASS\\n");\n  return 0;\n}\n'
    )

    with tempfile.NamedTemporaryFile(suffix=".c", mode="w", delete=False) as f:
        f.write(full)
        src = f.name
    out = src.replace(".c", "")
    try:
        subprocess.check_call(
            ["cc", "-o", out, src, "-std=c99", "-Wall", "-Werror"],
            stderr=subprocess.PIPE,
        )
        result = subprocess.check_output([out]).decode().strip()
        assert result == "PASS"
    finally:
        os.unlink(src)
        if os.path.exists(out):
            os.unlink(out)


def _compile_and_run_rust(rs_code, table, cases, prelude=""):
    """Compile generated Rust and verify every sample decodes like the reference."""
    lang = LanguageRust()
    checks = []
    for value, expected in cases:
        if table.decoder.signed:
            arg = "(%du64 as i64)" % value
        else:
            arg = "%du64" % value
        checks.append(
            "    assert_eq!(%s_string(%s), %s);"
            % (table.typeName, arg, lang.string_literal(expected))
        )

    full = (
        "#![allow(dead_code, non_snake_case, non_upper_case_globals, "
        "unused_parens, unused_mut, overflowing_literals)]\n\n"
        + prelude
        + rs_code
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


@pytest.fixture(params=["c", "rust"])
def language(request):
    tool = "cc" if request.param == "c" else "rustc"
    if shutil.which(tool) is None:
        pytest.skip("%s not available" % tool)
    return request.param


def _check(typeName, values, kind, language, **lang_kwargs):
    table = pack_names(typeName, values, kind)
    code = _generate(typeName, values, kind, language, **lang_kwargs)
    cases = [(v, table.string(v)) for v in _sample_values(table)]
    if language == "c":
        _compile_and_run_c(code, table, cases)
    else:
        _compile_and_run_rust(code, table, cases)


def _constants_prelude(values, language):
    """Declare the constants themselves, as the user's own header would."""
    lines = []
    for v in values:
        if language == "c":
            if v.signed and v.value == -(1 << 63):
                text = "(-9223372036854775807LL-1)"
            elif v.signed:
                text = "(%dLL)" % v.value
            else:
                text = "%dULL" % v.value
            lines.append("#define %s %s" % (v.originalName, text))
        elif v.signed:
            text = "i64::MIN" if v.value == -(1 << 63) else str(v.value)
            lines.append("const %s: i64 = %s;" % (v.originalName, text))
        else:
            lines.append("const %s: u64 = %d;" % (v.originalName, v.value))
    return "\n".join(lines) + "\n"


def _check_with_constants(typeName, values, kind, language):
    table = pack_names(typeName, values, kind)
    code = _generate(typeName, values, kind, language, checks=True)
    cases = [(v, table.string(v)) for v in _sample_values(table)]
    prelude = _constants_prelude(values, language)
    if language == "c":
        _compile_and_run_c(code, table, cases, prelude=prelude)
    else:
        _compile_and_run_rust(code, table, cases, prelude=prelude)


class TestEndToEnd:
    """Generate code, compile, and check it against the Python decoder."""

    def test_single_run(self, language):
        _check("Pill", PILL, Kind.ENUM, language)

    def test_offset_run(self, language):
        values = [cv("Ten", 10), cv("Eleven", 11), cv("Twelve", 12)]
        _check("T", values, Kind.ENUM, language)

    def test_single_value(self, language):
        _check("One", [cv("Only", 42)], Kind.ENUM, language)

    def test_negative_run(self, language):
        _check("S", [cv("M", -2), cv("N", -1), cv("Z", 0), cv("P", 1)], Kind.ENUM, language)

    def test_unsigned_top(self, language):
        values = [cv("Max", MASK64, False), cv("Almost", MASK64 - 1, False), cv("Z", 0, False)]
        _check("U", values, Kind.ENUM, language)

    def test_multi_run(self, language):
        values = [cv("A", 1), cv("B", 2), cv("C", 3), cv("D", 10), cv("E", 20), cv("F", 21)]
        _check("T", values, Kind.ENUM, language)

    def test_sparse(self, language):
        _check("T", _gapped(12, step=1000), Kind.ENUM, language)

    def test_escapes(self, language):
        values = [
            cv("A", 0, displayName='quo"te'),
            cv("B", 1, displayName="back\\slash"),
            cv("C", 2, displayName="??="),
            cv("D", 3, displayName="café"),
        ]
        _check("E", values, Kind.ENUM, language)

    def test_unsafe_rust(self):
        if shutil.which("rustc") is None:
            pytest.skip("rustc not available")
        _check("Pill", PILL, Kind.ENUM, "rust", unsafe_array_access=True)

    def test_flags(self, language):
        _check("Perm", PERM, Kind.FLAG, language)

    def test_flags_with_zero(self, language):
        _check("Perm", [cv("None", 0, False)] + PERM, Kind.FLAG, language)

    def test_lone_zero_flag(self, language):
        _check("Empty", [cv("None", 0, False)], Kind.FLAG, language)

    def test_flag_runs(self, language):
        values = [cv("F%d" % i, 1 << i, False) for i in (0, 1, 2, 8, 9, 40)]
        _check("F", values, Kind.FLAG, language)

    def test_signed_flags(self, language):
        values = [cv("High", -(1 << 63)), cv("Low", 1), cv("Mid", 1 << 20)]
        _check("F", values, Kind.FLAG, language)

    def test_sparse_flags(self, language):
        _check("Wide", [cv("None", 0, False)] + _spreadBits(12), Kind.FLAG, language)

    def test_c_truncation(self):
        if shutil.which("cc") is None:
            pytest.skip("cc not available")
        for values, kind in ((PILL, Kind.ENUM), (PERM, Kind.FLAG)):
            table = pack_names("T", values, kind)
            code = _generate("T", values, kind)
            cases = [(v, table.string(v)) for v in (2, 3, 7, 100)]
            _compile_and_run_c(code, table, cases, bufsize=4)

    def test_checks_compile(self, language):
        signed = [cv("High", -(1 << 63)), cv("Low", 1)]
        unsigned = [cv("Max", MASK64, False), cv("Bottom", 0, False)]
        for typeName, values, kind in (("F", signed, Kind.FLAG), ("U", unsigned, Kind.ENUM)):
            _check_with_constants(typeName, values, kind, language)

    def test_checks_catch_changed_value(self):
        if shutil.which("cc") is None:
            pytest.skip("cc not available")
        values = [cv("High", -(1 << 63)), cv("Low", 1)]
        table = pack_names("F", values, Kind.FLAG)
        code = _generate("F", values, Kind.FLAG, checks=True)
        prelude = _constants_prelude([cv("High", -(1 << 63)), cv("Low", 2)], "c")
        with pytest.raises(subprocess.CalledProcessError):
            _compile_and_run_c(code, table, [(1, "Low")], prelude=prelude)


# ── Declaration loading ────────────────────────────────────────────


TEXT = """\
# Drugs.
type Pill enum
PillPlacebo = 0
PillAspirin = 1     // aspirin
PillIbuprofen = 0x2
_ = 9

type Perm unsigned flags
Read = 1
Write = 0b10
Exec = 4
"""

XML = b"""\
<?xml version="1.0" encoding="UTF-8"?>
<constants>
  <type name="Pill">
    <const name="PillPlacebo" value="0"/>
    <const name="PillAspirin" value="1" comment="aspirin"/>
  </type>
  <!-- bits -->
  <type name="Perm" signed="false" kind="flags">
    <const name="Read" value="1"/>
    <const name="Write" value="0x2"/>
  </type>
</constants>
"""


class TestParseText:
    def test_types(self):
        pill, perm = parse_text(TEXT)
        assert pill.typeName == "Pill"
        assert pill.kind is Kind.ENUM
        assert [v.originalName for v in pill.values] == [
            "PillPlacebo",
            "PillAspirin",
            "PillIbuprofen",
        ]
        assert pill.values[2].rawValue == 2
        assert pill.values[0].signed
        assert perm.kind is Kind.FLAG
        assert not perm.values[0].signed
        assert perm.values[1].rawValue == 2

    def test_options(self):
        pill, _ = parse_text(TEXT, {"trimPrefix": "Pill", "useAnnotationName": True})
        assert [v.displayName for v in pill.values] == ["Placebo", "aspirin", "Ibuprofen"]

    def test_sized_types(self):
        (t,) = parse_text("type B uint8\nX = 1\n")
        assert not t.values[0].signed

    def test_reopened_type(self):
        (t,) = parse_text("type A\nX = 1\ntype A\nY = 2\n")
        assert len(t.values) == 2

    def test_redeclared_differently(self):
        with pytest.raises(DeclarationSyntaxError) as e:
            parse_text("type A\nX = 1\ntype A flags\n")
        assert e.value.lineno == 3

    def test_constant_outside_type(self):
        with pytest.raises(DeclarationSyntaxError) as e:
            parse_text("X = 1\n", filename="decls.txt")
        assert str(e.value).startswith("decls.txt:1: ")

    def test_bad_integer(self):
        with pytest.raises(DeclarationSyntaxError) as e:
            parse_text("type A\nX = 1.5\n")
        assert e.value.lineno == 2
        assert isinstance(e.value, ValueError)

    def test_unknown_attribute(self):
        with pytest.raises(DeclarationSyntaxError):
            parse_text("type A bogus\n")

    def test_garbage(self):
        with pytest.raises(DeclarationSyntaxError):
            parse_text("type A\nthis is not a constant\n")

    def test_out_of_range(self):
        with pytest.raises(UnsupportedConstantKindError) as e:
            parse_text("type A\nX = 0x10000000000000000\n")
        assert e.value.typeName == "A"


class TestParseXml:
    def test_types(self):
        pill, perm = parse_xml(XML)
        assert [v.originalName for v in pill.values] == ["PillPlacebo", "PillAspirin"]
        assert perm.kind is Kind.FLAG
        assert not perm.values[0].signed
        assert perm.values[1].rawValue == 2

    def test_comment_annotation(self):
        pill, _ = parse_xml(XML, Options(useAnnotationName=True))
        assert pill.values[1].displayName == "aspirin"

    def test_missing_attribute(self):
        with pytest.raises(DeclarationSyntaxError) as e:
            parse_xml(b"<constants>\n<type name='A'>\n<const value='1'/></type></constants>")
        assert e.value.lineno == 3

    def test_malformed(self):
        with pytest.raises(DeclarationSyntaxError):
            parse_xml(b"<constants><type>")

    def test_wrong_root(self):
        with pytest.raises(DeclarationSyntaxError):
            parse_xml(b"<enums/>")

    def test_bad_bool(self):
        with pytest.raises(DeclarationSyntaxError):
            parse_xml(b"<constants><type name='A' signed='maybe'/></constants>")


class TestLoadDeclarations:
    def test_text_file(self, tmp_path):
        path = tmp_path / "decls.txt"
        path.write_text(TEXT)
        assert [d.typeName for d in load_declarations(str(path))] == ["Pill", "Perm"]

    def test_xml_file(self, tmp_path):
        path = tmp_path / "decls.xml"
        path.write_bytes(XML)
        assert [d.typeName for d in load_declarations(str(path))] == ["Pill", "Perm"]

    def test_file_objects(self):
        assert len(load_declarations(io.StringIO(TEXT))) == 2
        assert len(load_declarations(io.BytesIO(XML))) == 2

    def test_bad_options_fail_first(self):
        with pytest.raises(InvalidConfigurationError):
            load_declarations("/nonexistent/decls.txt", {"bogus": 1})

    def test_not_utf8(self):
        with pytest.raises(DeclarationSyntaxError):
            load_declarations(io.BytesIO(b"type A\nX = 1 // \xff\n"))


# ── CLI ────────────────────────────────────────────────────────────


class TestCLI:
    def _run(self, *args, input=""):
        result = subprocess.run(
            [sys.executable, "-m", "nameTab", *args],
            capture_output=True,
            text=True,
            input=input,
        )
        return result

    def _write(self, tmp_path, text=TEXT, name="decls.txt"):
        path = tmp_path / name
        path.write_text(text)
        return str(path)

    def test_help(self):
        r = self._run("--help")
        assert r.returncode == 0
        assert "nameTab" in r.stdout

    def test_empty_input_shows_usage(self):
        r = self._run()
        assert r.returncode != 0
        assert "usage" in r.stderr.lower()

    def test_c_output(self, tmp_path):
        r = self._run(self._write(tmp_path))
        assert r.returncode == 0
        assert "#include" in r.stdout
        assert "Pill_string" in r.stdout
        assert "Perm_append" in r.stdout

    def test_stdin(self):
        r = self._run(input=TEXT)
        assert r.returncode == 0
        assert "Pill_string" in r.stdout

    def test_input_flag(self, tmp_path):
        r = self._run("-i", self._write(tmp_path))
        assert r.returncode == 0
        assert "Pill_string" in r.stdout

    def test_rust_output(self, tmp_path):
        r = self._run("--rust", self._write(tmp_path))
        assert r.returncode == 0
        assert "fn Pill_string" in r.stdout
        assert "fn Perm_flags" in r.stdout
        assert "#include" not in r.stdout

    def test_language_flag(self, tmp_path):
        r = self._run("--language", "rust", self._write(tmp_path))
        assert r.returncode == 0
        assert "fn Pill_string" in r.stdout

    def test_type_selection(self, tmp_path):
        r = self._run("--type", "Perm", self._write(tmp_path))
        assert r.returncode == 0
        assert "Perm_string" in r.stdout
        assert "Pill" not in r.stdout

    def test_unknown_type(self, tmp_path):
        r = self._run("--type", "Pill,Missing", self._write(tmp_path))
        assert r.returncode == 1
        assert "no values defined for type Missing" in r.stderr
        assert "Pill_string" in r.stdout

    def test_flags_flag(self, tmp_path):
        r = self._run("--flags", "--type", "Pill", self._write(tmp_path))
        assert r.returncode == 0
        assert "Pill_append" in r.stdout

    def test_trimprefix(self, tmp_path):
        r = self._run("--trimprefix", "Pill", "--type", "Pill", self._write(tmp_path))
        assert '"PlaceboAspirinIbuprofen"' in r.stdout

    def test_linecomment(self, tmp_path):
        r = self._run("--linecomment", "--type", "Pill", self._write(tmp_path))
        assert '"PillPlaceboaspirinPillIbuprofen"' in r.stdout

    def test_checks(self, tmp_path):
        r = self._run("--checks", self._write(tmp_path))
        assert "typedef char PillAspirin_check[((PillAspirin) == 1LL) ? 1 : -1];" in r.stdout

    def test_name_flag(self, tmp_path):
        r = self._run("--name", "drugs", self._write(tmp_path))
        assert "drugs_Pill_string" in r.stdout

    def test_rust_unsafe_output(self, tmp_path):
        r = self._run("--rust", "--unsafe", self._write(tmp_path))
        assert "get_unchecked" in r.stdout

    def test_output_file(self, tmp_path):
        out = tmp_path / "out.h"
        r = self._run("-o", str(out), self._write(tmp_path))
        assert r.returncode == 0
        assert r.stdout == ""
        assert "Pill_string" in out.read_text()

    def test_xml_input(self, tmp_path):
        path = tmp_path / "decls.xml"
        path.write_bytes(XML)
        r = self._run(str(path))
        assert r.returncode == 0
        assert "Perm_string" in r.stdout

    def test_syntax_error(self, tmp_path):
        r = self._run(self._write(tmp_path, "type A\nX = what\n"))
        assert r.returncode == 2
        assert "decls.txt:2:" in r.stderr

    def test_missing_file(self, tmp_path):
        r = self._run(str(tmp_path / "nope.txt"))
        assert r.returncode == 2

    def test_verbose_logs_decisions(self, tmp_path):
        r = self._run("-v", self._write(tmp_path))
        assert "DEBUG: Pill: 3 values in 1 runs; using SingleRun" in r.stderr

    def test_analyze(self, tmp_path, capsys):
        assert main(["--analyze", self._write(tmp_path)]) == 0
        out = capsys.readouterr().out
        assert "SingleRun" in out
        assert "MultiRunFlagDecompose" in out

    def test_jobs(self, tmp_path, capsys):
        assert main(["-j", "4", self._write(tmp_path)]) == 0
        assert "Perm_string" in capsys.readouterr().out
