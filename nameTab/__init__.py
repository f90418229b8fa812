# Copyright 2019 Facebook Inc. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Pack the names of integer constants into compact lookup tables.

Overview
--------

Given the named constants declared for one integer type, this module
builds the data and the decode routine that turn a runtime value back
into the name it was declared with.  Two kinds of types are handled:

**Enum**: each value has one name.  ``Pill(1)`` decodes to
``"Aspirin"``; values without a name decode to ``"Pill(42)"``.

**Flag**: each name is a single bit.  A value decodes to the names of
its set bits, lowest bit first, followed by ``"Day(96)"`` for any bits
no constant names.  Zero decodes to the zero constant's name if one was
declared, else to nothing.

The pipeline, run once per type:

  1. **Normalize**: drop non-single-bit values from flag types, sort by
     value (signed or unsigned as the type dictates) and keep the first
     declared name for each value.  The sort is stable, so aliases
     resolve in declaration order.
  2. **Split into runs**: maximal stretches of ``v, v+1, v+2, ...`` for
     enums, or of ``0, b, b<<1, b<<2, ...`` for flags.
  3. **Select a strategy** from the run count: a single run is indexed
     directly; up to ``MAX_RUNS`` runs get one branch (or one bit test)
     each; beyond that a sorted key table is used.
  4. **Lay out** each run's names as one concatenated string plus a table
     of byte offsets, using the narrowest unsigned index type that fits.
  5. **Describe the decode**: a ``Decoder`` records the branches, bit
     tests and fallbacks the generated routine performs, and can run
     them in Python as the reference implementation.

Code generation
---------------

``NameTable.genCode()`` registers strings, arrays and functions in a
``Code`` object; ``Code.print_code()`` emits them through a ``Language``
backend (C or Rust).
"""

import sys
import enum
import logging
import collections
from math import log2
from functools import partial
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, List, Optional, Sequence, Tuple, TextIO, Union


__all__ = [
    "Code",
    "ConstantValue",
    "Decoder",
    "EmptyInputError",
    "InvalidConfigurationError",
    "InvalidConstantNameError",
    "Kind",
    "Layout",
    "NameTabError",
    "NameTable",
    "Options",
    "PackResult",
    "Run",
    "Strategy",
    "TypeDeclaration",
    "UnsupportedConstantKindError",
    "build_layout",
    "languages",
    "languageClasses",
    "normalize",
    "pack_all",
    "pack_names",
    "select_strategy",
    "split_into_runs",
]

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

MASK64 = (1 << 64) - 1

# Types with more runs than this get a sorted key table.
MAX_RUNS = 8


class NameTabError(Exception):
    """Base class for errors raised while packing constant names."""


class EmptyInputError(NameTabError, ValueError):
    """No usable constants remain for a type."""

    def __init__(self, typeName):
        NameTabError.__init__(self, "no values defined for type %s" % typeName)
        self.typeName = typeName


class UnsupportedConstantKindError(NameTabError, TypeError):
    """A constant's value is not a 64-bit integer."""

    def __init__(self, constantName, value, typeName=None):
        NameTabError.__init__(self, constantName, value, typeName)
        self.constantName = constantName
        self.value = value
        self.typeName = typeName

    def __str__(self):
        where = " of type %s" % self.typeName if self.typeName else ""
        return "can't handle non-integer constant %s%s: %r" % (
            self.constantName,
            where,
            self.value,
        )


class InvalidConstantNameError(NameTabError, ValueError):
    """A constant has an empty or blank (``_``) name."""

    def __init__(self, constantName, typeName=None):
        NameTabError.__init__(self, constantName, typeName)
        self.constantName = constantName
        self.typeName = typeName

    def __str__(self):
        where = " of type %s" % self.typeName if self.typeName else ""
        return "invalid constant name%s: %r" % (where, self.constantName)


class InvalidConfigurationError(NameTabError, ValueError):
    """An unknown or mistyped configuration option."""

    def __init__(self, key, message=None):
        NameTabError.__init__(self, message or "unknown option: %r" % (key,))
        self.key = key


def isPow2(x):
    """Whether the 64-bit pattern ``x`` has at most one bit set.

    >>> isPow2(0)
    True
    >>> isPow2(8)
    True
    >>> isPow2(6)
    False
    >>> isPow2(1 << 63)
    True
    """
    return (x & (x - 1)) == 0


def toSigned(x):
    """
    >>> toSigned(5)
    5
    >>> toSigned((1 << 64) - 1)
    -1
    >>> toSigned(1 << 63)
    -9223372036854775808
    """
    return x - (1 << 64) if x & (1 << 63) else x


def indexBitsFor(n):
    """Returns the width of the smallest unsigned integer holding ``n``.

    Used to pick the narrowest element type for offsets into a
    concatenated name string.

    >>> indexBitsFor(0)
    8
    >>> indexBitsFor(255)
    8
    >>> indexBitsFor(256)
    16
    >>> indexBitsFor(65536)
    32
    """
    if n < 1 << 8:
        return 8
    if n < 1 << 16:
        return 16
    # Names never outgrow 32-bit offsets.
    return 32


class Kind(enum.Enum):
    ENUM = "enum"
    FLAG = "flags"


class Strategy(enum.Enum):
    SINGLE_RUN = "SingleRun"
    MULTI_RUN_SWITCH = "MultiRunSwitch"
    MULTI_RUN_FLAG_DECOMPOSE = "MultiRunFlagDecompose"
    SPARSE_MAP = "SparseMap"


class ConstantValue:
    """One named constant of the type being packed.

    The value is kept as a 64-bit pattern; ``signed`` says whether to
    read it as an int64 or a uint64, which only matters for ordering and
    printing.  ``literalText`` is the decimal text of the value unless
    the caller supplies the text it wants quoted in consistency checks.
    """

    __slots__ = ("originalName", "displayName", "rawValue", "signed", "literalText")

    def __init__(
        self,
        originalName: str,
        rawValue: int,
        signed: bool = True,
        displayName: Optional[str] = None,
        literalText: Optional[str] = None,
    ) -> None:
        if not originalName or originalName == "_":
            raise InvalidConstantNameError(originalName)
        if isinstance(rawValue, bool) or not isinstance(rawValue, int):
            raise UnsupportedConstantKindError(originalName, rawValue)
        if not -(1 << 63) <= rawValue <= MASK64:
            raise UnsupportedConstantKindError(originalName, rawValue)
        self.originalName = originalName
        self.displayName = originalName if displayName is None else displayName
        self.rawValue = rawValue & MASK64
        self.signed = bool(signed)
        self.literalText = str(self.value) if literalText is None else literalText

    @property
    def value(self):
        return toSigned(self.rawValue) if self.signed else self.rawValue

    def _key(self):
        return (
            self.originalName,
            self.displayName,
            self.rawValue,
            self.signed,
            self.literalText,
        )

    def __eq__(self, other):
        if not isinstance(other, ConstantValue):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return "%s(%r, %s)" % (self.__class__.__name__, self.originalName, self.value)


class Options:
    """How constant names become printed names.

    ``trimPrefix`` is stripped from each constant name; with
    ``useAnnotationName`` a non-empty annotation (e.g. a trailing
    comment) replaces the name altogether.
    """

    keys = ("trimPrefix", "useAnnotationName")

    def __init__(self, trimPrefix: str = "", useAnnotationName: bool = False) -> None:
        if not isinstance(trimPrefix, str):
            raise InvalidConfigurationError(
                "trimPrefix", "trimPrefix must be a string, not %r" % (trimPrefix,)
            )
        if not isinstance(useAnnotationName, bool):
            raise InvalidConfigurationError(
                "useAnnotationName",
                "useAnnotationName must be a bool, not %r" % (useAnnotationName,),
            )
        self.trimPrefix = trimPrefix
        self.useAnnotationName = useAnnotationName

    @classmethod
    def fromDict(cls, config):
        for key in config:
            if key not in cls.keys:
                raise InvalidConfigurationError(key)
        return cls(**config)

    @classmethod
    def coerce(cls, options):
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls.fromDict(options)

    def displayName(self, originalName, annotation=None):
        if self.useAnnotationName and annotation:
            annotation = annotation.strip()
            if annotation:
                return annotation
        if self.trimPrefix and originalName.startswith(self.trimPrefix):
            return originalName[len(self.trimPrefix) :]
        return originalName

    def constant(self, originalName, rawValue, signed=True, annotation=None, literalText=None):
        return ConstantValue(
            originalName,
            rawValue,
            signed,
            displayName=self.displayName(originalName, annotation),
            literalText=literalText,
        )

    def __repr__(self):
        return "%s(trimPrefix=%r, useAnnotationName=%r)" % (
            self.__class__.__name__,
            self.trimPrefix,
            self.useAnnotationName,
        )


def _coerce(value, typeName):
    if isinstance(value, ConstantValue):
        return value
    try:
        return ConstantValue(*value)
    except (UnsupportedConstantKindError, InvalidConstantNameError) as e:
        e.typeName = typeName
        raise


def retain(values, kind=Kind.ENUM, typeName=None):
    """Returns the constants ``kind`` can represent, in declaration order.

    Flag types keep only zero and single-bit values; anything else cannot
    be matched by one bit test and is dropped.
    """
    out = []
    for v in values:
        v = _coerce(v, typeName)
        if kind is Kind.FLAG and not isPow2(v.rawValue):
            logger.debug(
                "%s: dropping %s = %s; not a single bit",
                typeName,
                v.originalName,
                v.literalText,
            )
            continue
        out.append(v)
    return out


def normalize(values, kind=Kind.ENUM, typeName=None):
    """Sort and deduplicate the constants of one type.

    The sort is stable, so among constants sharing a value the first
    declared one is kept; the others are dropped entirely.

    Raises:
        EmptyInputError: if no constant survives filtering.
    """
    values = retain(values, kind, typeName)
    if not values:
        raise EmptyInputError(typeName)

    values = sorted(values, key=lambda v: v.value)
    out = values[:1]
    for v in values[1:]:
        if v.rawValue == out[-1].rawValue:
            logger.debug(
                "%s: %s is an alias of %s", typeName, v.originalName, out[-1].originalName
            )
            continue
        out.append(v)
    return out


class Run:
    """A maximal stretch of adjacent values sharing one name string.

    ``blob`` is the concatenation of the members' names and ``offsets``
    holds the UTF-8 byte offset of each name boundary, starting at 0, so
    member ``i`` is ``blob[offsets[i]:offsets[i+1]]`` in bytes.
    """

    def __init__(self, values: Sequence[ConstantValue]) -> None:
        assert values
        self.values = list(values)
        self.blob = "".join(v.displayName for v in self.values)
        offsets = [0]
        for v in self.values:
            offsets.append(offsets[-1] + len(v.displayName.encode("utf-8")))
        self.offsets = offsets

    def __len__(self):
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    def __getitem__(self, i):
        return self.values[i]

    @property
    def first(self):
        return self.values[0]

    @property
    def last(self):
        return self.values[-1]

    @property
    def size(self):
        return self.offsets[-1]

    @property
    def needsIndex(self):
        # A lone name is the whole blob.
        return len(self.values) > 1

    @property
    def indexBits(self):
        return indexBitsFor(self.size)

    def name(self, i):
        return self.blob.encode("utf-8")[self.offsets[i] : self.offsets[i + 1]].decode(
            "utf-8"
        )

    def __repr__(self):
        return "%s(%s)" % (
            self.__class__.__name__,
            [v.originalName for v in self.values],
        )


def _adjacent(prev, cur, kind):
    if kind is Kind.FLAG:
        # Zero may lead any run of bits.
        return prev == 0 or cur == (prev << 1) & MASK64
    return cur == (prev + 1) & MASK64


def split_into_runs(values, kind=Kind.ENUM):
    """Breaks normalized values into runs of contiguous sequences.

    For example, given enum values 1,2,3,5,6,7 it returns {1,2,3},{5,6,7};
    given flag values 0,1,2,8,16 it returns {0,1,2},{8,16}.
    """
    if not values:
        return []
    runs = []
    current = [values[0]]
    for prev, v in zip(values, values[1:]):
        if _adjacent(prev.rawValue, v.rawValue, kind):
            current.append(v)
        else:
            runs.append(Run(current))
            current = [v]
    runs.append(Run(current))
    return runs


def select_strategy(runs, kind=Kind.ENUM):
    if not runs:
        raise ValueError("runs must not be empty")
    if len(runs) > MAX_RUNS:
        return Strategy.SPARSE_MAP
    if kind is Kind.FLAG:
        return Strategy.MULTI_RUN_FLAG_DECOMPOSE
    if len(runs) == 1:
        return Strategy.SINGLE_RUN
    return Strategy.MULTI_RUN_SWITCH


class Layout:
    """The compact representation chosen for one type.

    For the run-based strategies each run carries its own name string
    and offsets, and ``indexBits`` is wide enough for the largest run
    that needs an offset table.

    For ``SPARSE_MAP`` all names are concatenated into ``blob``, in run
    order, and ``table`` maps each raw value to its ``(start, end)`` byte
    slice of it; ``indexBits`` is then wide enough for ``blob``.
    """

    def __init__(self, strategy: Strategy, runs: List[Run]) -> None:
        self.strategy = strategy
        self.runs = runs
        self.blob = None
        self.table = None

        sizes = [run.size for run in runs if run.needsIndex]
        self.indexBits = indexBitsFor(max(sizes)) if sizes else 8

        if strategy is Strategy.SPARSE_MAP:
            names = []
            table = collections.OrderedDict()
            n = 0
            for run in runs:
                for v in run:
                    size = len(v.displayName.encode("utf-8"))
                    table[v.rawValue] = (n, n + size)
                    names.append(v.displayName)
                    n += size
            self.blob = "".join(names)
            self.table = table
            self.indexBits = indexBitsFor(n)

    @property
    def values(self):
        return [v for run in self.runs for v in run]

    def name(self, rawValue):
        start, end = self.table[rawValue]
        return self.blob.encode("utf-8")[start:end].decode("utf-8")

    def __repr__(self):
        return "%s(%s, %d runs, u%d)" % (
            self.__class__.__name__,
            self.strategy.value,
            len(self.runs),
            self.indexBits,
        )


def build_layout(runs, kind=Kind.ENUM):
    return Layout(select_strategy(runs, kind), runs)


class Branch:
    """One enum run as the decoder sees it: a value range onto names."""

    def __init__(self, runIndex, run):
        self.runIndex = runIndex
        self.run = run
        self.first = run.first.rawValue
        self.count = len(run)
        # Runs starting at zero compare the input directly.
        self.subtract = self.first != 0

    @property
    def needsIndex(self):
        return self.run.needsIndex

    def position(self, rawValue):
        return (rawValue - self.first) & MASK64

    def contains(self, rawValue):
        return self.position(rawValue) < self.count

    def __repr__(self):
        return "%s(%d, %d)" % (self.__class__.__name__, self.first, self.count)


class FlagBit:
    """A known bit, and where its name lives in the layout."""

    def __init__(self, runIndex, position, value):
        self.runIndex = runIndex
        self.position = position
        self.value = value
        self.bit = value.rawValue

    def __repr__(self):
        return "%s(%s=%#x)" % (self.__class__.__name__, self.value.originalName, self.bit)


class Decoder:
    """The decode algorithm a layout implies.

    For enums, ``branches`` lists the runs in the order the generated
    code tests them; ``SPARSE_MAP`` layouts look values up in the table
    instead.  For flags, ``flags`` lists every known non-zero bit in
    ascending bit order and ``zero`` is the zero constant, if declared.

    ``decode()`` runs the algorithm in Python; generated code must agree
    with it for every input.
    """

    separator = "+"

    def __init__(self, typeName, kind, layout, declared=None):
        self.typeName = typeName
        self.kind = kind
        self.layout = layout
        values = layout.values
        self.signed = values[0].signed
        if declared is None:
            declared = values
        self.checks = [(v.originalName, v.literalText) for v in declared]

        self.branches = []
        self.flags = []
        self.zero = None
        if kind is Kind.FLAG:
            for i, run in enumerate(layout.runs):
                for j, v in enumerate(run):
                    if v.rawValue == 0:
                        self.zero = FlagBit(i, j, v)
                    else:
                        self.flags.append(FlagBit(i, j, v))
            # Signed ordering can put the top bit first.
            self.flags.sort(key=lambda f: f.bit)
        elif layout.strategy is not Strategy.SPARSE_MAP:
            self.branches = [Branch(i, run) for i, run in enumerate(layout.runs)]

    def fallback(self, rawValue):
        rawValue &= MASK64
        value = toSigned(rawValue) if self.signed else rawValue
        return "%s(%d)" % (self.typeName, value)

    def _name(self, flag):
        if self.layout.strategy is Strategy.SPARSE_MAP:
            return self.layout.name(flag.bit)
        return self.layout.runs[flag.runIndex].name(flag.position)

    def decode(self, value):
        """Decodes ``value`` to a name (enums) or a list of names (flags)."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("value must be an integer, not %r" % (value,))
        u = value & MASK64
        if self.kind is Kind.FLAG:
            return self._decodeFlags(u)
        return self._decodeEnum(u)

    def _decodeEnum(self, u):
        if self.layout.strategy is Strategy.SPARSE_MAP:
            if u in self.layout.table:
                return self.layout.name(u)
            return self.fallback(u)
        for branch in self.branches:
            if branch.contains(u):
                return branch.run.name(branch.position(u))
        return self.fallback(u)

    def _decodeFlags(self, u):
        if u == 0:
            return [self._name(self.zero)] if self.zero is not None else []
        names = []
        for flag in self.flags:
            if u & flag.bit:
                u &= ~flag.bit
                names.append(self._name(flag))
        if u:
            names.append(self.fallback(u))
        return names

    def string(self, value):
        names = self.decode(value)
        if self.kind is Kind.FLAG:
            return self.separator.join(names)
        return names


class Language:
    """Base class for target-language code generation backends.

    Subclasses (LanguageC, LanguageRust) override syntax-specific methods:
    type names, declarations, string literals, statements, etc.

    Instances may be configured (e.g. ``unsafe_array_access=True`` for
    Rust's ``get_unchecked``).  Default instances live in the ``languages``
    dict; ``languageClasses`` holds the classes for custom instantiation.
    """

    def __init__(self, *, unsafe_array_access=False):
        self.unsafe_array_access = unsafe_array_access

    def print_array(self, name, array, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        decl = self.declare_array(linkage, array.typ, name, len(array.values))
        print(decl, "=")
        print(self.array_start)
        w = max((len(str(v)) for v in array.values), default=1)
        n = 1 << int(round(log2(78 / (w + 1))))
        if (w + 2) * n <= 78:
            w += 1
        for i in range(0, len(array.values), n):
            line = array.values[i : i + n]
            print("  " + "".join("%*s," % (w, v) for v in line))
        print(self.array_end)

    def print_function(self, name, function, *, print=print):
        linkage = (
            self.private_function_linkage
            if function.private
            else self.public_function_linkage
        )
        decl = self.declare_function(linkage, function.retType, name, function.args)
        print(decl)
        print(self.function_start)
        for line in function.body:
            print("  %s" % line)
        print(self.function_end)

    def array_index(self, name, index):
        return "%s[%s]" % (name, index)

    def wrapping_sub(self, a, b):
        return "%s-%s" % (a, b)

    def uint_literal(self, value, typ):
        return str(value)

    def literal_value(self, literal):
        """The integer a check literal spells, or None for an expression.

        >>> Language().literal_value('-0x10')
        -16
        >>> Language().literal_value('1 << 3') is None
        True
        """
        try:
            return int(literal, 0)
        except ValueError:
            return None

    def if_block(self, cond, stmts):
        return [self.if_start % cond] + ["  " + s for s in stmts] + [self.block_end]

    def for_range(self, var, count, stmts):
        return [self.for_start % (var, count)] + ["  " + s for s in stmts] + [
            self.block_end
        ]


class LanguageC(Language):
    name = "c"
    private_array_linkage = "static const"
    public_array_linkage = "extern const"
    private_function_linkage = "static inline"
    public_function_linkage = "extern inline"
    array_start = "{"
    array_end = "};"
    function_start = "{"
    function_end = "}"
    if_start = "if (%s) {"
    for_start = "for (size_t %s = 0; %s < %d; %s++) {"
    block_end = "}"

    def print_preamble(self, *, print=print):
        print("#include <stddef.h>")
        print("#include <stdint.h>")
        print("#include <stdio.h>")
        print("#include <inttypes.h>")
        print()

    def print_string(self, name, text, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        print("%s char %s[] = %s;" % (linkage, name, self.string_literal(text)))

    def string_literal(self, text):
        r"""
        >>> LanguageC().string_literal('a"b')
        '"a\\"b"'
        >>> LanguageC().string_literal('é')
        '"\\303\\251"'
        """
        out = []
        for b in text.encode("utf-8"):
            c = chr(b)
            if c in '"\\?':
                # '?' too, so no trigraph sneaks in.
                out.append("\\" + c)
            elif 0x20 <= b < 0x7F:
                out.append(c)
            else:
                out.append("\\%03o" % b)
        return '"%s"' % "".join(out)

    def for_range(self, var, count, stmts):
        return [self.for_start % (var, var, count, var)] + [
            "  " + s for s in stmts
        ] + [self.block_end]

    def cast(self, typ, expr):
        return "(%s)(%s)" % (typ, expr)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s %s[%d]" % (linkage, typ, name, size)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join("%s%s%s" % (t, "" if t[-1] == "*" else " ", n) for t, n in args)
        return "%s%s %s (%s)" % (linkage, retType, name, args)

    def declare_var(self, typ, name, expr, mutable=False):
        return "%s %s = %s;" % (typ, name, expr)

    def type_name(self, typ):
        assert typ[0] in "iu"
        signed = "" if typ[0] == "i" else "u"
        size = typeWidth(typ)
        return "%sint%s_t" % (signed, size)

    def uint_literal(self, value, typ):
        if "64" in typ:
            return "%dULL" % value
        return "%du" % value

    def as_usize(self, expr):
        return expr

    def has_bit(self, var, bit):
        return "%s & %s" % (var, bit)

    def clear_bit(self, var, bit):
        return "%s &= ~%s;" % (var, bit)

    # Decode functions write into a caller buffer with snprintf semantics:
    # they return the full length and truncate to n bytes.

    def decode_signature(self, valueType):
        return "int", ((valueType, "i"), ("char *", "buf"), ("size_t", "n"))

    def name_ref(self, name, start=None, end=None):
        if start is None:
            return name, "(int) (sizeof %s - 1)" % name
        return "%s + %s" % (name, start), "(int) (%s - %s)" % (end, start)

    def return_name(self, name, start=None, end=None):
        ptr, length = self.name_ref(name, start, end)
        return 'return snprintf (buf, n, "%%.*s", %s, %s);' % (length, ptr)

    return_only_name = return_name

    def _fallback_format(self, typeName, signed, var):
        if signed:
            return '"%s(%%" PRId64 ")"' % typeName, self.cast("int64_t", var)
        return '"%s(%%" PRIu64 ")"' % typeName, var

    def return_fallback(self, typeName, signed, var="i"):
        fmt, arg = self._fallback_format(typeName, signed, var)
        return "return snprintf (buf, n, %s, %s);" % (fmt, arg)

    def add_append_helper(self, code, name):
        body = [
            "size_t off = (size_t) len < n ? (size_t) len : n;",
            'return len + snprintf (buf + off, n - off, "%s%.*s", k ? "+" : "", l, s);',
        ]
        args = (
            ("char *", "buf"),
            ("size_t", "n"),
            ("int", "len"),
            ("int", "k"),
            ("const char *", "s"),
            ("int", "l"),
        )
        return code.addFunction("int", name, args, body, inline_always=True)

    def begin_names(self):
        return ["int len = 0, k = 0;", "if (n) buf[0] = '\\0';"]

    def push_name(self, append, name, start=None, end=None):
        ptr, length = self.name_ref(name, start, end)
        return "len = %s (buf, n, len, k++, %s, %s);" % (append, ptr, length)

    def push_fallback(self, append, typeName, signed, var="u"):
        fmt, arg = self._fallback_format(typeName, signed, var)
        return [
            "char tmp[%d];" % (len(typeName) + 24),
            "int l = snprintf (tmp, sizeof tmp, %s, %s);" % (fmt, arg),
            "len = %s (buf, n, len, k++, tmp, l);" % append,
        ]

    def end_names(self):
        return "return len;"

    def add_flag_functions(self, code, name, valueType, body, private=True):
        retType, args = self.decode_signature(valueType)
        return code.addFunction(retType, name, args, body, private=private)

    def sparse_find(self, keys, count):
        lines = [
            "size_t lo = 0, hi = %d;" % count,
            "while (lo < hi) {",
            "  size_t mid = lo + (hi - lo) / 2;",
            "  if (%s < u)" % self.array_index(keys, "mid"),
            "    lo = mid + 1;",
            "  else",
            "    hi = mid;",
            "}",
        ]
        cond = "lo < %d && %s == u" % (count, self.array_index(keys, "lo"))
        return lines, cond, "lo"

    def check_literal(self, literal, signed):
        """
        >>> LanguageC().check_literal('-9223372036854775808', True)
        '(-9223372036854775807LL-1)'
        >>> LanguageC().check_literal('0x10', True)
        '16LL'
        >>> LanguageC().check_literal('18446744073709551615', False)
        '18446744073709551615ULL'
        """
        value = self.literal_value(literal)
        if value is None:
            return "(%s)" % literal
        if not signed:
            return "%dULL" % (value & MASK64)
        value = toSigned(value & MASK64)
        if value == -(1 << 63):
            # No literal reaches INT64_MIN without going unsigned.
            return "(%dLL-1)" % (value + 1)
        return "%dLL" % value

    def check(self, name, literal, signed):
        # A negative array size fails the build; C99 has no _Static_assert.
        return "typedef char %s_check[((%s) == %s) ? 1 : -1];" % (
            name,
            name,
            self.check_literal(literal, signed),
        )


class LanguageRust(Language):
    name = "rust"
    private_array_linkage = "static"
    public_array_linkage = "pub(crate) static"
    private_function_linkage = ""
    public_function_linkage = "pub(crate)"
    array_start = "["
    array_end = "];"
    function_start = "{"
    function_end = "}"
    if_start = "if %s {"
    for_start = "for %s in 0..%d {"
    block_end = "}"

    def print_preamble(self, *, print=print):
        pass

    def print_string(self, name, text, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        print("%s %s: &str = %s;" % (linkage, name, self.string_literal(text)))

    def string_literal(self, text):
        r"""
        >>> LanguageRust().string_literal('a"b\n')
        '"a\\"b\\u{a}"'
        """
        out = []
        for c in text:
            if c in '"\\':
                out.append("\\" + c)
            elif ord(c) < 0x20 or ord(c) == 0x7F:
                out.append("\\u{%x}" % ord(c))
            else:
                out.append(c)
        return '"%s"' % "".join(out)

    def cast(self, typ, expr):
        return "(%s) as %s" % (expr, typ)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s: [%s; %d]" % (linkage, name, typ, size)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join("%s: %s" % (n, t) for t, n in args)
        return "%sfn %s (%s) -> %s" % (linkage, name, args, retType)

    def declare_var(self, typ, name, expr, mutable=False):
        return "let %s%s: %s = %s;" % ("mut " if mutable else "", name, typ, expr)

    def print_function(self, name, function, *, print=print):
        if function.inline_always:
            print("#[inline(always)]")
        else:
            print("#[inline]")
        super().print_function(name, function, print=print)

    def type_name(self, typ):
        assert typ[0] in "iu"
        signed = typ[0]
        size = typeWidth(typ)
        return "%s%s" % (signed, size)

    def as_usize(self, expr):
        if not expr:
            return ""
        try:
            int(expr)
            return "%susize" % expr
        except ValueError:
            # Assume expr is a variable or expression that evaluates to an integer.
            # Rust requires explicit casting to usize.
            if expr.startswith("(") and expr.endswith(")"):
                return "%s as usize" % expr
            else:
                return "(%s) as usize" % expr

    def array_index(self, name, index):
        if self.unsafe_array_access:
            return "unsafe { *(%s.get_unchecked(%s)) }" % (name, index)
        return "%s[%s]" % (name, index)

    def uint_literal(self, value, typ):
        return "%d%s" % (value, typ)

    def wrapping_sub(self, a, b):
        return "(%s).wrapping_sub(%s)" % (a, b)

    def has_bit(self, var, bit):
        return "(%s & %s) != 0" % (var, bit)

    def clear_bit(self, var, bit):
        return "%s &= !%s;" % (var, bit)

    def decode_signature(self, valueType):
        return "String", ((valueType, "i"),)

    def name_ref(self, name, start=None, end=None):
        if start is None:
            return name
        return "%s[%s..%s]" % (name, start, end)

    def return_name(self, name, start=None, end=None):
        return "return %s.to_string();" % self.name_ref(name, start, end)

    def return_only_name(self, name, start=None, end=None):
        return "return vec![%s.to_string()];" % self.name_ref(name, start, end)

    def _fallback_arg(self, signed, var):
        return self.cast("i64", var) if signed else var

    def return_fallback(self, typeName, signed, var="i"):
        return 'return format!("%s({})", %s);' % (typeName, var)

    def add_append_helper(self, code, name):
        return None

    def begin_names(self):
        return ["let mut s: Vec<String> = Vec::new();"]

    def push_name(self, append, name, start=None, end=None):
        return "s.push(%s.to_string());" % self.name_ref(name, start, end)

    def push_fallback(self, append, typeName, signed, var="u"):
        return [
            's.push(format!("%s({})", %s));' % (typeName, self._fallback_arg(signed, var))
        ]

    def end_names(self):
        return "return s;"

    def add_flag_functions(self, code, name, valueType, body, private=True):
        flagsName = code.addFunction(
            "Vec<String>",
            name.rsplit("_", 1)[0] + "_flags",
            ((valueType, "i"),),
            body,
            private=private,
        )
        return code.addFunction(
            "String",
            name,
            ((valueType, "i"),),
            ['return %s(i).join("+");' % flagsName],
            private=private,
        )

    def sparse_find(self, keys, count):
        return ["let found = %s.binary_search(&u);" % keys], "let Ok(j) = found", "j"

    def check_literal(self, literal, signed):
        """
        >>> LanguageRust().check_literal('-9223372036854775808', True)
        '-9223372036854775808i128'
        >>> LanguageRust().check_literal('1 << 3', False)
        '((1 << 3) as i128)'
        """
        value = self.literal_value(literal)
        if value is None:
            return "((%s) as i128)" % literal
        value &= MASK64
        return "%di128" % (toSigned(value) if signed else value)

    def check(self, name, literal, signed):
        return "const _: () = assert!((%s) as i128 == %s);" % (
            name,
            self.check_literal(literal, signed),
        )


languageClasses = {
    "c": LanguageC,
    "rust": LanguageRust,
}

languages = {k: v() for k, v in languageClasses.items()}


class Array:
    """A named typed array of values for code generation."""

    def __init__(self, typ, values):
        self.typ = typ
        self.values = list(values)


class Function:
    """A generated function; ``body`` is a list of statement lines."""

    def __init__(self, retType, args, body, *, private=True, inline_always=False):
        self.retType = retType
        self.args = args
        self.body = list(body)
        self.private = private
        self.inline_always = inline_always


class Code:
    """Accumulator for generated strings, arrays, functions and checks.

    During ``genCode()``, each name table registers its name strings
    (via ``addString``), offset arrays (via ``addArray``) and decode
    functions (via ``addFunction``) here.  One ``Code`` object can
    collect the tables of many types; symbol names must not collide.

    Call ``print_code()`` to emit all accumulated declarations in the
    target language.
    """

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self.strings = collections.OrderedDict()
        self.functions = collections.OrderedDict()
        self.arrays = collections.OrderedDict()
        self.checks = []

    def nameFor(self, name: str) -> str:
        if not self.namespace:
            return name
        return "%s_%s" % (self.namespace, name)

    def _claim(self, name):
        if name in self.strings or name in self.arrays:
            raise ValueError("symbol %s is already defined" % name)

    def addFunction(
        self,
        retType: str,
        name: str,
        args: Tuple[Tuple[str, str], ...],
        body: List[str],
        *,
        private: bool = True,
        inline_always: bool = False,
    ) -> str:
        name = self.nameFor(name)
        if name in self.functions:
            assert self.functions[name].retType == retType
            assert self.functions[name].args == args
            assert self.functions[name].body == list(body)
            assert self.functions[name].private == private
            assert self.functions[name].inline_always == inline_always
        else:
            self.functions[name] = Function(
                retType, args, body, private=private, inline_always=inline_always
            )
        return name

    def addString(self, name: str, text: str) -> str:
        name = self.nameFor(name)
        self._claim(name)
        self.strings[name] = text
        return name

    def addArray(self, typ: str, name: str, values: List[Any]) -> str:
        name = self.nameFor(name)
        self._claim(name)
        self.arrays[name] = Array(typ, values)
        return name

    def addCheck(self, name: str, literal: str, signed: bool) -> None:
        # C99 rejects a repeated typedef.
        if (name, literal, signed) not in self.checks:
            self.checks.append((name, literal, signed))

    def print_code(
        self,
        *,
        file: TextIO = sys.stdout,
        private: bool = True,
        indent: Union[int, str] = 0,
        language: Union[str, "Language"] = "c",
    ) -> None:
        if isinstance(indent, int):
            indent *= " "
        printn = partial(print, file=file, sep="")
        println = partial(printn, indent)

        if isinstance(language, str):
            language = languages[language]

        language.print_preamble(print=println)

        for name, text in self.strings.items():
            language.print_string(name, text, print=println, private=private)

        for name, array in self.arrays.items():
            language.print_array(name, array, print=println, private=private)

        if (self.strings or self.arrays) and self.functions:
            printn()

        for name, function in self.functions.items():
            language.print_function(name, function, print=println)

        if self.checks:
            printn()
            for name, literal, signed in self.checks:
                println(language.check(name, literal, signed))


def typeWidth(typ):
    """
    >>> typeWidth('int8_t')
    8
    >>> typeWidth('uint32_t')
    32
    >>> typeWidth('i8')
    8
    >>> typeWidth('u32')
    32
    """
    return int("".join([c for c in typ if c.isdigit()]))


class NameTable:
    """The packed names of one type: its layout and its decoder."""

    def __init__(self, typeName: str, kind: Kind, layout: Layout, decoder: Decoder) -> None:
        self.typeName = typeName
        self.kind = kind
        self.layout = layout
        self.decoder = decoder

    @property
    def strategy(self):
        return self.layout.strategy

    @property
    def runs(self):
        return self.layout.runs

    def decode(self, value):
        return self.decoder.decode(value)

    def string(self, value):
        return self.decoder.string(value)

    def __repr__(self):
        return "%s(%s, %s)" % (self.__class__.__name__, self.typeName, self.layout)

    def genCode(self, code, language="c", private=True, checks=False):
        """Generate the name data and the decode function for this type.

        The C backend emits ``int T_string (value, char *buf, size_t n)``;
        the Rust backend emits ``fn T_string (i) -> String`` and, for flag
        types, ``fn T_flags (i) -> Vec<String>``.

        With ``checks``, each declared constant also gets a compile-time
        check that it still has the value it was packed with: a C99
        ``typedef`` of a negative-size array, or a Rust ``const``
        ``assert!``.  The constants must be in scope where the code is
        compiled.

        Returns the name of the string function.
        """
        if isinstance(language, str):
            language = languages[language]

        self._language = language
        self._code = code
        valueType = language.type_name("i64" if self.decoder.signed else "u64")
        self._u64 = language.type_name("u64")
        self._index = language.type_name("u%d" % self.layout.indexBits)

        if self.layout.strategy is Strategy.SPARSE_MAP:
            self._declareTable()
        else:
            self._declareRuns()

        if self.kind is Kind.FLAG:
            name = self._genFlags(valueType, private)
        elif self.layout.strategy is Strategy.SINGLE_RUN:
            name = self._genOneRun(valueType, private)
        elif self.layout.strategy is Strategy.MULTI_RUN_SWITCH:
            name = self._genMultipleRuns(valueType, private)
        else:
            name = self._genMap(valueType, private)

        if checks:
            for originalName, literal in self.decoder.checks:
                code.addCheck(originalName, literal, self.decoder.signed)

        del self._language, self._code
        return name

    def _sym(self, name):
        return "%s_%s" % (self.typeName, name)

    def _lit(self, value):
        return self._language.uint_literal(value, self._u64)

    def _declareRuns(self):
        suffixed = self.layout.strategy is not Strategy.SINGLE_RUN
        self._names = []
        self._indexes = []
        for i, run in enumerate(self.layout.runs):
            suffix = "_%d" % i if suffixed else ""
            self._names.append(self._code.addString(self._sym("name" + suffix), run.blob))
            index = None
            if run.needsIndex:
                index = self._code.addArray(
                    self._index, self._sym("index" + suffix), run.offsets
                )
            self._indexes.append(index)

    def _declareTable(self):
        # Keys are sorted as unsigned patterns for binary search; for flag
        # types that is also ascending bit order.
        table = self.layout.table
        keys = sorted(table)
        slices = []
        for k in keys:
            slices.extend(table[k])
        self._keyOrder = keys
        self._blob = self._code.addString(self._sym("name"), self.layout.blob)
        self._keys = self._code.addArray(
            self._u64, self._sym("keys"), [self._lit(k) for k in keys]
        )
        self._slices = self._code.addArray(self._index, self._sym("slices"), slices)

    def _runName(self, runIndex, position):
        """Returns (name, start, end) for a member of a run; ``position`` is
        either a constant or the name of a variable."""
        lang = self._language
        name = self._names[runIndex]
        index = self._indexes[runIndex]
        if index is None:
            return name, None, None
        if isinstance(position, int):
            pos, next = lang.as_usize(str(position)), lang.as_usize(str(position + 1))
        else:
            pos = lang.as_usize(position)
            next = "%s+1" % pos
        start = lang.as_usize(lang.array_index(index, pos))
        end = lang.as_usize(lang.array_index(index, next))
        return name, start, end

    def _tableName(self, position):
        lang = self._language
        pos = lang.as_usize(position)
        start = lang.as_usize(lang.array_index(self._slices, "2*%s" % pos))
        end = lang.as_usize(lang.array_index(self._slices, "2*%s+1" % pos))
        return self._blob, start, end

    def _load(self, mutable, first=0):
        lang = self._language
        expr = lang.cast(self._u64, "i")
        if first:
            expr = lang.wrapping_sub(expr, self._lit(first))
        return lang.declare_var(self._u64, "u", expr, mutable)

    def _genOneRun(self, valueType, private):
        lang = self._language
        branch = self.decoder.branches[0]
        body = [self._load(False, branch.first)]
        body += lang.if_block(
            "u >= %s" % self._lit(branch.count),
            [lang.return_fallback(self.typeName, self.decoder.signed)],
        )
        body.append(lang.return_name(*self._runName(0, "u")))
        retType, args = lang.decode_signature(valueType)
        return self._code.addFunction(
            retType, self._sym("string"), args, body, private=private
        )

    def _genMultipleRuns(self, valueType, private):
        lang = self._language
        mutable = any(b.subtract and b.count > 1 for b in self.decoder.branches)
        body = [self._load(mutable)]
        for branch in self.decoder.branches:
            if branch.count == 1:
                cond = "u == %s" % self._lit(branch.first)
                body += lang.if_block(cond, [lang.return_name(*self._runName(branch.runIndex, 0))])
                continue
            if branch.subtract:
                first = self._lit(branch.first)
                cond = "%s < %s" % (lang.wrapping_sub("u", first), self._lit(branch.count))
                stmts = ["u = %s;" % lang.wrapping_sub("u", first)]
            else:
                cond = "u < %s" % self._lit(branch.count)
                stmts = []
            stmts.append(lang.return_name(*self._runName(branch.runIndex, "u")))
            body += lang.if_block(cond, stmts)
        body.append(lang.return_fallback(self.typeName, self.decoder.signed))
        retType, args = lang.decode_signature(valueType)
        return self._code.addFunction(
            retType, self._sym("string"), args, body, private=private
        )

    def _genMap(self, valueType, private):
        lang = self._language
        body = [self._load(False)]
        lines, cond, pos = lang.sparse_find(self._keys, len(self._keyOrder))
        body += lines
        body += lang.if_block(cond, [lang.return_name(*self._tableName(pos))])
        body.append(lang.return_fallback(self.typeName, self.decoder.signed))
        retType, args = lang.decode_signature(valueType)
        return self._code.addFunction(
            retType, self._sym("string"), args, body, private=private
        )

    def _genFlags(self, valueType, private):
        lang = self._language
        sparse = self.layout.strategy is Strategy.SPARSE_MAP
        append = lang.add_append_helper(self._code, self._sym("append"))

        body = [self._load(True)]
        zero = self.decoder.zero
        if zero is not None:
            if sparse:
                ref = self._tableName(str(self._keyOrder.index(0)))
            else:
                ref = self._runName(zero.runIndex, zero.position)
            body += lang.if_block("u == 0", [lang.return_only_name(*ref)])
        body += lang.begin_names()

        if sparse:
            key = lang.array_index(self._keys, "j")
            body += lang.for_range(
                "j",
                len(self._keyOrder),
                lang.if_block(
                    lang.has_bit("u", key),
                    [lang.clear_bit("u", key), lang.push_name(append, *self._tableName("j"))],
                ),
            )
        else:
            for flag in self.decoder.flags:
                bit = self._lit(flag.bit)
                ref = self._runName(flag.runIndex, flag.position)
                body += lang.if_block(
                    lang.has_bit("u", bit),
                    [lang.clear_bit("u", bit), lang.push_name(append, *ref)],
                )

        body += lang.if_block(
            "u != 0", lang.push_fallback(append, self.typeName, self.decoder.signed)
        )
        body.append(lang.end_names())
        return lang.add_flag_functions(
            self._code, self._sym("string"), valueType, body, private=private
        )


class TypeDeclaration:
    """The constants declared for one type, in declaration order."""

    def __init__(self, typeName: str, values: Iterable[Any] = (), kind: Kind = Kind.ENUM) -> None:
        self.typeName = typeName
        self.values = list(values)
        self.kind = kind

    def __repr__(self):
        return "%s(%s, %s, %d values)" % (
            self.__class__.__name__,
            self.typeName,
            getattr(self.kind, "value", self.kind),
            len(self.values),
        )


class PackResult:
    """The outcome of packing one declared type: a table or an error."""

    def __init__(self, declaration, table=None, error=None):
        self.declaration = declaration
        self.table = table
        self.error = error

    @property
    def typeName(self):
        return self.declaration.typeName

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        return "%s(%s, %r)" % (
            self.__class__.__name__,
            self.typeName,
            self.table if self.ok else self.error,
        )


# Public API


def pack_names(
    typeName: str,
    values: Iterable[Union[ConstantValue, Tuple[Any, ...]]],
    kind: Union[Kind, str] = Kind.ENUM,
) -> NameTable:
    """Pack the names of one type's constants into a lookup table.

    Args:
        typeName: Name of the type, used in fallback strings and symbols.
        values: ConstantValue objects, or ``(name, value[, signed])``
            tuples, in declaration order.
        kind: ``Kind.ENUM`` or ``Kind.FLAG`` (or their values, ``"enum"``
            and ``"flags"``).

    Returns:
        A NameTable holding the layout and its decoder.

    Raises:
        EmptyInputError: If no usable constants remain.
        UnsupportedConstantKindError: If a value is not a 64-bit integer.
        InvalidConstantNameError: If a constant's name is empty or ``_``.
        InvalidConfigurationError: If ``kind`` is not a known Kind.
    """
    try:
        kind = Kind(kind)
    except ValueError:
        raise InvalidConfigurationError(
            "kind", "unknown kind %r for type %s" % (kind, typeName)
        ) from None
    declared = retain(values, kind, typeName)
    values = normalize(declared, kind, typeName)
    runs = split_into_runs(values, kind)
    layout = build_layout(runs, kind)
    logger.debug(
        "%s: %d values in %d runs; using %s with u%d offsets",
        typeName,
        len(values),
        len(runs),
        layout.strategy.value,
        layout.indexBits,
    )
    return NameTable(typeName, kind, layout, Decoder(typeName, kind, layout, declared))


def _pack_one(declaration):
    try:
        table = pack_names(declaration.typeName, declaration.values, declaration.kind)
    except NameTabError as e:
        return PackResult(declaration, error=e)
    return PackResult(declaration, table=table)


def pack_all(
    declarations: Iterable[TypeDeclaration], *, workers: Optional[int] = None
) -> List[PackResult]:
    """Pack several independent types.

    A type that fails (e.g. with EmptyInputError) does not stop the
    others; its PackResult carries the error instead of a table.  With
    ``workers``, types are packed on a thread pool.  Results are always in
    declaration order.
    """
    declarations = list(declarations)
    if workers and workers > 1 and len(declarations) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(_pack_one, declarations))
    return [_pack_one(d) for d in declarations]


if __name__ == "__main__":
    import doctest

    sys.exit(doctest.testmod().failed)
