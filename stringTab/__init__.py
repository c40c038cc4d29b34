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
Generate compact name tables for integer enumerations.

Overview
--------

Given the named constants of one integer enumeration type, this module
emits C or Rust source for two operations:

  - ``T_string(v)``: the display name of a value, or ``T(<decimal>)``
    for values that have no name.
  - an optional reverse lookup ``name -> (value, found)``, named from a
    template such as ``"{}FromString"``.

Names are never stored one string per value.  Instead they are
concatenated into a single blob, and an offset index records where each
name starts:

    blob  = "PlaceboAspirinIbuprofen"
    index = [0, 7, 14, 23]

    name(i) = blob[index[i] : index[i+1]]

The index uses the narrowest of 8, 16 or 32 bits that can hold the blob
length.  For C every name is followed by a NUL byte, so that
``blob + index[i]`` is directly a C string.

Forward plans
-------------

The input is first normalized (sorted by value, duplicate values
dropped, first declared name wins) and split into **runs** of
consecutive values.  The shape of the ``T_string`` code depends only on
the number of runs:

  - **OneRunPlan** (1 run): subtract the lowest value with wrapping
    64-bit arithmetic, compare against the run length, index the blob.
  - **MultiRunPlan** (up to ``runThreshold`` runs): one range test per
    run, each run with its own blob and index.
  - **SparseMapPlan** (more runs): a ``switch`` / ``match`` with one
    case per value, each returning a span of one shared blob.

Reverse plans
-------------

The reverse lookup depends on the number of values N:

  - **HashedSwitchPlan** (N <= 500): hash the query with 32-bit FNV-1a
    and switch on the hash; names sharing a hash are tested in turn.
  - **BinarySearchPlan** (N <= 5000): binary search over a blob of
    sorted names, with a parallel value array.
  - **DirectMapPlan** (larger): a static open-addressed hash table.

Every plan can also evaluate itself in Python (``stringify()`` or
``lookup()``) straight from the tables it emits.

Code generation
---------------

The ``Code`` class accumulates checks, strings, arrays and functions as
plans are rendered with ``genCode()``.  ``Code.print_code()`` emits the
accumulated declarations in the target language.  The ``Language``
class hierarchy abstracts syntax differences between C and Rust.

``generate()`` ties it together for one type and returns the text;
``generate_all()`` runs several types independently.
"""

import io
import sys
import logging
import collections
import itertools
from math import log2
from functools import partial
from typing import Union, List, Dict, Optional, Any, Tuple, TextIO, Sequence


__all__ = [
    "Value",
    "Code",
    "InputError",
    "InternalInvariantError",
    "normalize",
    "splitIntoRuns",
    "NameTable",
    "pick_forward_plan",
    "pick_reverse_plan",
    "generate",
    "generate_all",
    "languages",
    "languageClasses",
    "binaryBitsFor",
    "indexBitsFor",
    "fnv1a32",
]

__version__ = "1.0.0"

log = logging.getLogger(__name__)


# Strategy tunables.  These are size/speed guesses, not derived limits.
#
# runThreshold:      most runs still rendered as range tests; above it a
#                    sparse switch over every value is used.
# lookupThresholds:  (hashed switch limit, binary search limit) on the
#                    number of values for the reverse lookup.

runThreshold = 10
lookupThresholds = (500, 5000)

fnvOffset = 2166136261
fnvPrime = 16777619

mask32 = (1 << 32) - 1
mask64 = (1 << 64) - 1


class InputError(ValueError):
    """The constants of one type cannot be generated.

    ``reason`` is ``"empty"``, ``"unsupportedKind"``, ``"invalidName"``
    or ``"tooLarge"``.
    """

    def __init__(self, reason, message):
        ValueError.__init__(self, message)
        self.reason = reason


class InternalInvariantError(RuntimeError):
    """Generated text failed the consistency check.

    This is a bug in the generator.  ``text`` holds the unverified
    output so that it can be inspected (or compiled) anyway.
    """

    def __init__(self, diagnostic, text):
        RuntimeError.__init__(self, diagnostic)
        self.diagnostic = diagnostic
        self.text = text


def binaryBitsFor(minV, maxV):
    """Returns the smallest power-of-two bit width that can store values
    in [minV, maxV].

    >>> binaryBitsFor(0, 0)
    0
    >>> binaryBitsFor(0, 1)
    1
    >>> binaryBitsFor(0, 15)
    4
    >>> binaryBitsFor(0, 16)
    8
    >>> binaryBitsFor(-1, 100)
    8
    >>> binaryBitsFor(0, 65536)
    32
    """

    if minV > maxV:
        raise ValueError("minV (%d) > maxV (%d)" % (minV, maxV))

    if 0 <= minV and maxV <= 0:
        return 0
    if 0 <= minV and maxV <= 1:
        return 1
    if 0 <= minV and maxV <= 3:
        return 2
    if 0 <= minV and maxV <= 15:
        return 4

    if 0 <= minV and maxV <= 255:
        return 8
    if -128 <= minV and maxV <= 127:
        return 8

    if 0 <= minV and maxV <= 65535:
        return 16
    if -32768 <= minV and maxV <= 32767:
        return 16

    if 0 <= minV and maxV <= 4294967295:
        return 32
    if -2147483648 <= minV and maxV <= 2147483647:
        return 32

    if 0 <= minV and maxV <= 18446744073709551615:
        return 64
    if -9223372036854775808 <= minV and maxV <= 9223372036854775807:
        return 64

    raise ValueError("values out of range: [%d, %d]" % (minV, maxV))


def indexBitsFor(length):
    """Returns the width of an offset index into a blob of *length* bytes.

    Only whole C/Rust integer types are used, so the width is one of
    8, 16 or 32.

    >>> indexBitsFor(0)
    8
    >>> indexBitsFor(255)
    8
    >>> indexBitsFor(256)
    16
    >>> indexBitsFor(65535)
    16
    >>> indexBitsFor(65536)
    32
    """
    bits = max(8, binaryBitsFor(0, length))
    if bits > 32:
        raise InputError("tooLarge", "name data too large: %d bytes" % length)
    return bits


def typeWidth(typ):
    """
    >>> typeWidth('int8_t')
    8
    >>> typeWidth('uint32_t')
    32
    >>> typeWidth('u16')
    16
    """
    return int("".join([c for c in typ if c.isdigit()]))


def fnv1a32(s):
    """32-bit FNV-1a hash of the UTF-8 encoding of *s*.

    >>> hex(fnv1a32(""))
    '0x811c9dc5'
    >>> hex(fnv1a32("a"))
    '0xe40c292c'
    """
    h = fnvOffset
    for b in s.encode("utf-8"):
        h ^= b
        h = (h * fnvPrime) & mask32
    return h


class Value:
    """One declared constant.

    ``name`` is the display name, ``reference`` the source expression
    naming the constant (emitted verbatim), ``value`` the integer value
    and ``text`` its canonical text.  ``order`` is the declaration
    position; ``normalize()`` fills it in when it is None.
    """

    def __init__(self, name, reference, value, signed=True, text=None, order=None):
        self.name = name
        self.reference = reference
        self.value = value
        self.signed = signed
        self.text = text
        self.order = order

    def __repr__(self):
        return "Value(%r, %r, %r)" % (self.name, self.reference, self.value)


def fromBits(value, signed):
    """Interpret a 64-bit pattern as a signed or unsigned integer.

    >>> fromBits(18446744073709551615, True)
    -1
    >>> fromBits(-1, False)
    18446744073709551615
    >>> fromBits(7, True)
    7
    """
    value &= mask64
    if signed and value >> 63:
        value -= 1 << 64
    return value


def validateValues(values):
    """Check *values* and return interpreted copies in declaration order."""
    if not values:
        raise InputError("empty", "no values defined")

    signed = values[0].signed
    out = []
    for i, v in enumerate(values):
        number = v.value
        if isinstance(number, bool) or not isinstance(number, int):
            raise InputError(
                "unsupportedKind",
                "can't handle non-integer constant %s: %r" % (v.reference, number),
            )
        if not -(1 << 63) <= number <= mask64:
            raise InputError(
                "unsupportedKind", "value of %s is not a 64-bit integer" % v.reference
            )
        if v.signed != signed:
            raise InputError(
                "unsupportedKind", "constants mix signed and unsigned values"
            )
        if not isinstance(v.name, str):
            raise InputError("invalidName", "name of %s is not text" % v.reference)
        number = fromBits(number, signed)
        order = i if v.order is None else v.order
        text = str(number) if v.text is None else v.text
        out.append(Value(v.name, v.reference, number, signed, text, order))
    return out


def normalize(values):
    """Sort *values* by value and drop duplicate values.

    For duplicates the first declared name survives:

    >>> normalize([Value("B", "B", 5), Value("A", "A", 5), Value("C", "C", 1)])
    [Value('C', 'C', 1), Value('B', 'B', 5)]
    """
    values = sorted(validateValues(values), key=lambda v: (v.value, v.order))
    out = values[:1]
    for v in values[1:]:
        if v.value != out[-1].value:
            out.append(v)
    return out


def splitIntoRuns(values):
    """Split normalized *values* into maximal runs of consecutive values.

    >>> values = normalize([Value("x", "x", n) for n in (1, 2, 3, 5, 6, 7)])
    >>> [[v.value for v in run] for run in splitIntoRuns(values)]
    [[1, 2, 3], [5, 6, 7]]
    """
    runs = []
    start = 0
    for i in range(1, len(values) + 1):
        if i == len(values) or values[i].value != values[i - 1].value + 1:
            runs.append(values[start:i])
            start = i
    return runs


def distinctNames(values):
    """Drop values whose display name was already declared earlier."""
    first = {}
    for v in sorted(values, key=lambda v: v.order):
        first.setdefault(v.name, v)
    return [v for v in values if first[v.name] is v]


class NameTable:
    """Concatenated names plus an offset index into them.

    >>> table = NameTable(["Placebo", "Aspirin", "Ibuprofen"])
    >>> table.blob
    b'PlaceboAspirinIbuprofen'
    >>> table.index
    [0, 7, 14, 23]
    >>> table.bits
    8
    >>> table.name(1)
    'Aspirin'

    With a terminator every name is followed by it, but the index
    still has one entry per name plus the final length:

    >>> NameTable(["ab", "c"], "\\0").index
    [0, 3, 5]
    """

    def __init__(self, names, terminator=""):
        self.names = list(names)
        self.terminator = terminator
        blob = bytearray()
        index = [0]
        for name in self.names:
            if terminator and terminator in name:
                raise InputError("invalidName", "name %r contains %r" % (name, terminator))
            blob += (name + terminator).encode("utf-8")
            index.append(len(blob))
        self.blob = bytes(blob)
        self.index = index
        self.bits = indexBitsFor(len(self.blob))

    def __len__(self):
        return len(self.names)

    def span(self, i):
        begin = self.index[i]
        return begin, self.index[i + 1] - len(self.terminator.encode("utf-8"))

    def name(self, i):
        begin, end = self.span(i)
        return self.blob[begin:end].decode("utf-8")

    @property
    def cost(self):
        return len(self.blob) + len(self.index) * self.bits // 8


class Language:
    """Base class for target-language code generation backends.

    Subclasses (LanguageC, LanguageRust) override syntax-specific methods:
    type names, declarations, literals, statements and so on.  Statement
    helpers return lists of lines; nested blocks are indented by two
    spaces.

    Instances may be configured (e.g. ``unsafe_array_access=True`` for
    Rust's ``get_unchecked``).  Default instances live in the ``languages``
    dict; ``languageClasses`` holds the classes for custom instantiation.
    """

    indent = "  "
    literalWidth = 72

    def __init__(self, *, unsafe_array_access=False):
        self.unsafe_array_access = unsafe_array_access

    def print_array(self, name, array, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        decl = self.declare_array(linkage, array.typ, name, len(array.values))
        print(decl, " =")
        print(self.array_start)
        w = max((len(str(v)) for v in array.values), default=1)
        n = 1 << max(0, int(round(log2(78 / (w + 1)))))
        if (w + 2) * n <= 78:
            w += 1
        for i in range(0, len(array.values), n):
            line = array.values[i : i + n]
            print("  " + "".join("%*s," % (w, v) for v in line))
        print(self.array_end)

    def print_string(self, name, data, *, print=print, private=True):
        linkage = self.private_array_linkage if private else self.public_array_linkage
        decl = self.declare_string(linkage, name)
        literals = self.string_literals(data)
        if len(literals) == 1:
            print(decl, " = ", literals[0], ";")
            return
        print(decl, " =", self.concat_start)
        for literal in literals[:-1]:
            print("  ", literal, self.concat_sep)
        print("  ", literals[-1], self.concat_end)

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
            print(self.indent, line)
        print(self.function_end)

    def string_literals(self, data):
        """Split *data* into quoted literals of bounded width."""
        literals = []
        chunk = ""
        for piece in self.escape(data):
            if chunk and len(chunk) + len(piece) > self.literalWidth:
                literals.append('"%s"' % chunk)
                chunk = ""
            chunk += piece
        if chunk or not literals:
            literals.append('"%s"' % chunk)
        return literals

    def quote(self, s):
        return '"%s"' % "".join(self.escape(s.encode("utf-8")))

    def array_index(self, name, index):
        return "%s[%s]" % (name, index)

    def usize_literal(self, value):
        if value == "":
            return ""
        return "%s%s" % (value, self.usize_suffix)

    def uint_literal(self, value, typ):
        return str(value)

    def block(self, head, body):
        return [head + " {"] + [self.indent + line for line in body] + ["}"]

    def if_block(self, cond, body):
        return self.block(self.if_head % cond, body)

    def while_block(self, cond, body):
        return self.block(self.while_head % cond, body)

    def assign(self, name, expr):
        return "%s = %s;" % (name, expr)

    def range_cond(self, var, lo, hi, unsigned):
        if lo == hi:
            return "%s == %s" % (var, self.int_literal(lo))
        if lo == 0 and unsigned:
            return "%s <= %s" % (var, self.int_literal(hi))
        return "%s >= %s && %s <= %s" % (
            var,
            self.int_literal(lo),
            var,
            self.int_literal(hi),
        )


class LanguageC(Language):
    name = "c"
    terminator = "\0"
    private_array_linkage = "static const"
    public_array_linkage = "extern const"
    private_function_linkage = "static inline"
    public_function_linkage = "extern inline"
    array_start = "{"
    array_end = "};"
    concat_start = ""
    concat_sep = ""
    concat_end = ";"
    function_start = "{"
    function_end = "}"
    if_head = "if (%s)"
    while_head = "while (%s)"
    u8 = "uint8_t"
    usize = "unsigned"
    usize_suffix = "u"

    def print_preamble(self, *, print=print):
        print("#include <stdint.h>")
        print("#include <stdio.h>")
        print("#include <string.h>")
        print()

    def print_check(self, reference, literal, *, print=print):
        message = self.quote("%s changed value; regenerate" % reference)
        print("_Static_assert((%s) - (%s) == 0, %s);" % (reference, literal, message))

    def print_constant(self, name, value, *, print=print):
        print("enum { %s = %d };" % (name, value))

    def escape(self, data):
        for b in data:
            if b in (0x22, 0x5C):
                yield "\\" + chr(b)
            elif b == 0x3F:
                # Keep trigraphs out of the literal.
                yield "\\?"
            elif 0x20 <= b < 0x7F:
                yield chr(b)
            else:
                yield "\\%03o" % b

    def cast(self, typ, expr):
        return "(%s)(%s)" % (typ, expr)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s %s[%d]" % (linkage, typ, name, size)

    def declare_string(self, linkage, name):
        if linkage:
            linkage += " "
        return "%schar %s[]" % (linkage, name)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join(
            "%s%s" % (t, n) if t.endswith("*") else "%s %s" % (t, n) for t, n in args
        )
        return "%s%s %s (%s)" % (linkage, retType, name, args)

    def declare_var(self, typ, name, expr, mutable=False):
        return "%s %s = %s;" % (typ, name, expr)

    def type_name(self, typ):
        assert typ[0] in "iu"
        signed = "" if typ[0] == "i" else "u"
        size = typeWidth(typ)
        return "%sint%s_t" % (signed, size)

    def int_literal(self, value):
        if value > 9223372036854775807:
            return "%dULL" % value
        if value == -9223372036854775808:
            return "(-9223372036854775807LL-1)"
        if not -2147483648 <= value <= 2147483647:
            return "%dLL" % value
        return str(value)

    def u64_literal(self, value):
        return "%dULL" % (value & mask64)

    def hex_literal(self, value):
        return "0x%08xu" % value

    def uint_literal(self, value, typ):
        if "64" in typ:
            return "%dULL" % value
        return "%du" % value

    def as_usize(self, expr):
        return expr

    def offset(self, var, lo):
        return "(uint64_t) %s - %s" % (var, self.u64_literal(lo))

    def name_slice(self, blob, index, i):
        return "%s + %s" % (blob, self.array_index(index, i))

    def span(self, blob, begin, end):
        return "%s + %d" % (blob, begin)

    def return_stmt(self, expr):
        return "return %s;" % expr

    def return_name(self, expr):
        return "return %s;" % expr

    def string_signature(self, code, typeName):
        size = len(typeName) + 23
        bufSize = code.addConstant("string_buf_size", size)
        return "const char *", ((typeName, "v"), ("char *", "buf")), bufSize

    def fallback(self, typeName, var, signed, bufSize):
        if signed:
            fmt, cast = "%lld", "long long"
        else:
            fmt, cast = "%llu", "unsigned long long"
        return [
            'snprintf (buf, %s, "%s(%s)", (%s) %s);' % (bufSize, typeName, fmt, cast, var),
            "return buf;",
        ]

    def switch(self, var, cases):
        lines = ["switch (%s) {" % var]
        for label, body in cases:
            lines.append("case %s:" % label)
            lines.extend(self.indent + line for line in body)
            lines.append(self.indent + "break;")
        lines.append("}")
        return lines

    def fnv_lines(self, var):
        return [
            "uint32_t h = %s;" % self.uint_literal(fnvOffset, "u32"),
        ] + self.block(
            "for (const unsigned char *p = (const unsigned char *) %s; *p; p++)" % var,
            ["h ^= *p;", "h *= %s;" % self.uint_literal(fnvPrime, "u32")],
        )

    def lookup_signature(self, typeName):
        return "int", (("const char *", "name"), ("%s *" % typeName, "v"))

    def names_equal(self, expr):
        return "!strcmp (name, %s)" % expr

    def compare_lines(self, expr, equal, less, greater):
        return (
            ["int c = strcmp (name, %s);" % expr]
            + self.if_block("c == 0", equal)
            + self.if_block("c < 0", less)
            + self.block("else", greater)
        )

    def found(self, expr):
        return ["*v = %s;" % expr, "return 1;"]

    def not_found(self):
        return ["return 0;"]


class LanguageRust(Language):
    name = "rust"
    terminator = ""
    private_array_linkage = "static"
    public_array_linkage = "pub(crate) static"
    private_function_linkage = ""
    public_function_linkage = "pub(crate)"
    array_start = "["
    array_end = "];"
    concat_start = " concat!("
    concat_sep = ","
    concat_end = ");"
    function_start = "{"
    function_end = "}"
    if_head = "if %s"
    while_head = "while %s"
    u8 = "u8"
    usize = "usize"
    usize_suffix = "usize"

    def print_preamble(self, *, print=print):
        pass

    def print_check(self, reference, literal, *, print=print):
        print("const _: () = assert!((%s) - (%s) == 0);" % (reference, literal))

    def print_constant(self, name, value, *, print=print):
        print("const %s: usize = %d;" % (name, value))

    def escape(self, data):
        for c in data.decode("utf-8"):
            if c in '"\\':
                yield "\\" + c
            elif " " <= c < "\x7f":
                yield c
            else:
                yield "\\u{%x}" % ord(c)

    def cast(self, typ, expr):
        return "(%s) as %s" % (expr, typ)

    def declare_array(self, linkage, typ, name, size):
        if linkage:
            linkage += " "
        return "%s%s: [%s; %d]" % (linkage, name, typ, size)

    def declare_string(self, linkage, name):
        if linkage:
            linkage += " "
        return "%s%s: &str" % (linkage, name)

    def declare_function(self, linkage, retType, name, args):
        if linkage:
            linkage += " "
        args = ", ".join("%s: %s" % (n, t) for t, n in args)
        return "%sfn %s (%s) -> %s" % (linkage, name, args, retType)

    def declare_var(self, typ, name, expr, mutable=False):
        return "let %s%s: %s = %s;" % ("mut " if mutable else "", name, typ, expr)

    def print_function(self, name, function, *, print=print):
        # Add #[inline] attribute for better optimization hints
        if function.inline_always:
            print("#[inline(always)]")
        else:
            print("#[inline]")
        # Call parent implementation
        super().print_function(name, function, print=print)

    def type_name(self, typ):
        assert typ[0] in "iu"
        signed = typ[0]
        size = typeWidth(typ)
        return "%s%s" % (signed, size)

    def int_literal(self, value):
        return str(value)

    def u64_literal(self, value):
        return "%du64" % (value & mask64)

    def hex_literal(self, value):
        return "0x%08x" % value

    def uint_literal(self, value, typ):
        return "%d%s" % (value, typ)

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

    def offset(self, var, lo):
        return "(%s as u64).wrapping_sub(%s)" % (var, self.u64_literal(lo))

    def name_slice(self, blob, index, i):
        return "&%s[%s..%s]" % (
            blob,
            self.as_usize(self.array_index(index, i)),
            self.as_usize(self.array_index(index, "%s + 1" % i)),
        )

    def span(self, blob, begin, end):
        return "&%s[%d..%d]" % (blob, begin, end)

    def return_stmt(self, expr):
        return expr

    def return_name(self, expr):
        return "return std::borrow::Cow::Borrowed(%s);" % expr

    def string_signature(self, code, typeName):
        return "std::borrow::Cow<'static, str>", ((typeName, "v"),), None

    def fallback(self, typeName, var, signed, bufSize):
        return ['std::borrow::Cow::Owned(format!("%s({})", %s))' % (typeName, var)]

    def switch(self, var, cases):
        lines = ["match %s {" % var]
        for label, body in cases:
            lines.extend(self.indent + line for line in self.block(label + " =>", body))
        lines.append(self.indent + "_ => {}")
        lines.append("}")
        return lines

    def fnv_lines(self, var):
        return [
            "let mut h: u32 = %d;" % fnvOffset,
        ] + self.block(
            "for b in %s.bytes()" % var,
            ["h ^= b as u32;", "h = h.wrapping_mul(%d);" % fnvPrime],
        )

    def lookup_signature(self, typeName):
        return "(%s, bool)" % typeName, (("&str", "name"),)

    def names_equal(self, expr):
        return "name == %s" % expr

    def compare_lines(self, expr, equal, less, greater):
        lines = ["match name.cmp(%s) {" % expr]
        for arm, body in (("Equal", equal), ("Less", less), ("Greater", greater)):
            lines.extend(
                self.indent + line
                for line in self.block("std::cmp::Ordering::%s =>" % arm, body)
            )
        lines.append("}")
        return lines

    def found(self, expr):
        return ["return (%s, true);" % expr]

    def not_found(self):
        return ["(0, false)"]


languageClasses = {
    "c": LanguageC,
    "rust": LanguageRust,
}

languages = {k: v() for k, v in languageClasses.items()}


def languageFor(language):
    if isinstance(language, str):
        return languages[language]
    return language


class Array:
    """A named typed array accumulating values for code generation."""

    def __init__(self, typ):
        self.typ = typ
        self.values = []

    def extend(self, values):
        start = len(self.values)
        self.values.extend(values)
        return start


class Function:
    """A generated function; ``body`` is a list of statement lines."""

    def __init__(self, retType, args, body, *, private=True, inline_always=False):
        self.retType = retType
        self.args = args
        self.body = body
        self.private = private
        self.inline_always = inline_always


class Code:
    """Accumulator for the generated code of one type.

    During ``genCode()``, each plan registers its name blobs (via
    ``addString``), index and value arrays (via ``addArray``) and its
    function (via ``addFunction``) here.  ``generate()`` also registers
    one compile-time check per constant (via ``addCheck``).

    A Code object belongs to a single ``generate()`` call; it is never
    shared between types.

    Call ``print_code()`` to emit all accumulated declarations in the
    target language, or ``text()`` to get them as a string.
    """

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self.checks = []
        self.constants = collections.OrderedDict()
        self.strings = collections.OrderedDict()
        self.arrays = collections.OrderedDict()
        self.functions = collections.OrderedDict()

    def nameFor(self, name: str) -> str:
        return "%s_%s" % (self.namespace, name)

    def addCheck(self, reference: str, literal: str) -> None:
        self.checks.append((reference, literal))

    def addConstant(self, name: str, value: int) -> str:
        name = self.nameFor(name)
        assert self.constants.get(name, value) == value
        self.constants[name] = value
        return name

    def addString(self, name: str, data: bytes) -> str:
        name = self.nameFor(name)
        assert name not in self.strings
        self.strings[name] = data
        return name

    def addFunction(
        self,
        retType: str,
        name: str,
        args: Tuple[Tuple[str, str], ...],
        body: List[str],
        *,
        private: bool = True,
        inline_always: bool = False,
        namespaced: bool = True,
    ) -> str:
        if namespaced:
            name = self.nameFor(name)
        if name in self.functions:
            assert self.functions[name].retType == retType
            assert self.functions[name].args == args
            assert self.functions[name].body == body
            assert self.functions[name].private == private
            assert self.functions[name].inline_always == inline_always
        else:
            self.functions[name] = Function(
                retType, args, body, private=private, inline_always=inline_always
            )
        return name

    def addArray(self, typ: str, name: str, values: List[Any]) -> Tuple[str, int]:
        name = self.nameFor(name)
        array = self.arrays.get(name)
        if array is None:
            array = self.arrays[name] = Array(typ)
        start = array.extend(values)
        return name, start

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

        language = languageFor(language)

        language.print_preamble(print=println)

        for reference, literal in self.checks:
            language.print_check(reference, literal, print=println)

        if self.checks:
            printn()

        for name, value in self.constants.items():
            language.print_constant(name, value, print=println)

        for name, data in self.strings.items():
            language.print_string(name, data, print=println, private=private)

        for name, array in self.arrays.items():
            language.print_array(name, array, print=println, private=private)

        if (self.constants or self.strings or self.arrays) and self.functions:
            printn()

        for i, (name, function) in enumerate(self.functions.items()):
            if i:
                printn()
            language.print_function(name, function, print=println)

    def text(self, **kwargs) -> str:
        out = io.StringIO()
        self.print_code(file=out, **kwargs)
        return out.getvalue()


_closers = {")": "(", "]": "[", "}": "{"}


def checkSyntax(text):
    """Return a diagnostic if *text* has unbalanced brackets, else None.

    String literals and ``//`` comments are skipped.

    >>> checkSyntax('f(a[1], "(")') is None
    True
    >>> checkSyntax("f(a[1)")
    "line 1: ')' does not match '['"
    >>> checkSyntax("{\\n")
    "line 1: unclosed '{'"
    """
    stack = []
    line = 1
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\n":
            line += 1
        elif c == '"':
            i += 1
            while i < n and text[i] not in '"\n':
                if text[i] == "\\":
                    i += 1
                i += 1
            if i >= n or text[i] == "\n":
                return "line %d: unterminated string literal" % line
        elif text.startswith("//", i):
            while i + 1 < n and text[i + 1] != "\n":
                i += 1
        elif c in "([{":
            stack.append((c, line))
        elif c in _closers:
            if not stack:
                return "line %d: unmatched %r" % (line, c)
            opener, _ = stack.pop()
            if opener != _closers[c]:
                return "line %d: %r does not match %r" % (line, c, opener)
        i += 1
    if stack:
        opener, where = stack[-1]
        return "line %d: unclosed %r" % (where, opener)
    return None


class Plan:
    """One way of rendering a lookup, selected by a pick function.

    ``cost`` is the number of bytes of tables the plan emits.
    """

    kind = None

    def __init__(self, typeName, values):
        self.typeName = typeName
        self.values = values
        self.signed = values[0].signed

    @property
    def cost(self):
        return 0

    def describe(self):
        return "%s: %d values, %d bytes of tables" % (
            self.kind,
            len(self.values),
            self.cost,
        )

    def __repr__(self):
        return "%s%s" % (self.__class__.__name__, (len(self.values), self.cost))


class ForwardPlan(Plan):
    """Plan for the ``T_string`` function."""

    def fallback(self, value):
        return "%s(%d)" % (self.typeName, value)

    def find(self, value):
        raise NotImplementedError

    def stringify(self, value):
        """Evaluate the plan's tables like the generated code does."""
        name = self.find(value)
        if name is None:
            return self.fallback(value)
        return name

    def genCode(self, code, language="c", private=True):
        language = languageFor(language)
        retType, args, bufSize = language.string_signature(code, self.typeName)
        body = self.body(code, language)
        body += language.fallback(self.typeName, "v", self.signed, bufSize)
        return code.addFunction(retType, "string", args, body, private=private)


class OneRunPlan(ForwardPlan):
    """All values are consecutive: subtract and bounds-check."""

    kind = "OneRun"

    def __init__(self, typeName, values, terminator=""):
        ForwardPlan.__init__(self, typeName, values)
        self.lo = values[0].value
        self.table = NameTable([v.name for v in values], terminator)

    @property
    def cost(self):
        return self.table.cost

    def find(self, value):
        i = (value - self.lo) & mask64
        if i < len(self.table):
            return self.table.name(i)
        return None

    def body(self, code, language):
        blob = code.addString("name", self.table.blob)
        index, _ = code.addArray(
            language.type_name("u%d" % self.table.bits), "index", self.table.index
        )
        name = language.name_slice(blob, index, language.as_usize("i"))
        return [
            language.declare_var(
                language.type_name("u64"), "i", language.offset("v", self.lo)
            )
        ] + language.if_block(
            "i < %s" % language.u64_literal(len(self.table)),
            [language.return_name(name)],
        )


class MultiRunPlan(ForwardPlan):
    """A few runs: one range test and one name table per run."""

    kind = "MultiRun"

    def __init__(self, typeName, runs, terminator=""):
        ForwardPlan.__init__(self, typeName, [v for run in runs for v in run])
        self.runs = runs
        self.tables = [NameTable([v.name for v in run], terminator) for run in runs]

    @property
    def cost(self):
        return sum(
            t.cost if len(t) > 1 else len(t.blob) for t in self.tables
        )

    def find(self, value):
        for run, table in zip(self.runs, self.tables):
            if run[0].value <= value <= run[-1].value:
                return table.name(value - run[0].value)
        return None

    def body(self, code, language):
        lines = []
        for i, (run, table) in enumerate(zip(self.runs, self.tables)):
            lo, hi = run[0].value, run[-1].value
            cond = language.range_cond("v", lo, hi, not self.signed)
            blob = code.addString("name_%d" % i, table.blob)
            if len(run) == 1:
                lines += language.if_block(cond, [language.return_name(blob)])
                continue
            index, _ = code.addArray(
                language.type_name("u%d" % table.bits), "index_%d" % i, table.index
            )
            lines += language.if_block(
                cond,
                [
                    language.declare_var(
                        language.usize, "i", language.as_usize(language.offset("v", lo))
                    ),
                    language.return_name(language.name_slice(blob, index, "i")),
                ],
            )
        return lines


class SparseMapPlan(ForwardPlan):
    """Many runs: a direct switch from every value to its name span."""

    kind = "SparseMap"

    def __init__(self, typeName, values, terminator=""):
        ForwardPlan.__init__(self, typeName, values)
        self.table = NameTable([v.name for v in values], terminator)
        self.positions = {v.value: i for i, v in enumerate(values)}

    @property
    def cost(self):
        return len(self.table.blob)

    def find(self, value):
        i = self.positions.get(value)
        if i is None:
            return None
        return self.table.name(i)

    def body(self, code, language):
        blob = code.addString("name", self.table.blob)
        cases = []
        for i, v in enumerate(self.values):
            begin, end = self.table.span(i)
            cases.append(
                (
                    language.int_literal(v.value),
                    [language.return_name(language.span(blob, begin, end))],
                )
            )
        return language.switch("v", cases)


def pick_forward_plan(
    typeName: str,
    values: Sequence[Value],
    *,
    language: Union[str, "Language"] = "c",
    run_threshold: Optional[int] = None,
) -> ForwardPlan:
    """Choose how ``T_string`` is rendered.

    Args:
        typeName: Name of the enumeration type.
        values: The type's constants.  They are normalized here.
        language: Target language name or instance; decides how names are
            terminated in the blobs.
        run_threshold: Most runs rendered as range tests.  Defaults to
            ``runThreshold``.

    Returns:
        A OneRunPlan, MultiRunPlan or SparseMapPlan.
    """
    if run_threshold is None:
        run_threshold = runThreshold
    terminator = languageFor(language).terminator

    values = normalize(values)
    runs = splitIntoRuns(values)
    if len(runs) == 1:
        return OneRunPlan(typeName, runs[0], terminator)
    if len(runs) <= run_threshold:
        return MultiRunPlan(typeName, runs, terminator)
    return SparseMapPlan(typeName, values, terminator)


class ReversePlan(Plan):
    """Plan for the name -> (value, found) function."""

    def __init__(self, typeName, values):
        Plan.__init__(self, typeName, values)
        self.entries = distinctNames(values)

    def find(self, name):
        raise NotImplementedError

    def lookup(self, name):
        """Evaluate the plan's tables like the generated code does."""
        v = self.find(name)
        if v is None:
            return 0, False
        return v.value, True

    def valueCost(self):
        lo = min(v.value for v in self.entries)
        hi = max(v.value for v in self.entries)
        return len(self.entries) * max(1, binaryBitsFor(lo, hi) // 8)

    def genCode(self, code, funcName, language="c", private=True):
        language = languageFor(language)
        retType, args = language.lookup_signature(self.typeName)
        body = self.body(code, language)
        return code.addFunction(
            retType, funcName, args, body, private=private, namespaced=False
        )


class HashedSwitchPlan(ReversePlan):
    """Switch on the FNV-1a hash of the name, then compare names."""

    kind = "HashedSwitch"

    def __init__(self, typeName, values):
        ReversePlan.__init__(self, typeName, values)
        entries = sorted(
            self.entries, key=lambda v: (fnv1a32(v.name), v.name.encode("utf-8"))
        )
        self.buckets = [
            (h, list(group))
            for h, group in itertools.groupby(entries, key=lambda v: fnv1a32(v.name))
        ]
        self.positions = {h: i for i, (h, _) in enumerate(self.buckets)}

    def find(self, name):
        i = self.positions.get(fnv1a32(name))
        if i is None:
            return None
        for v in self.buckets[i][1]:
            if v.name == name:
                return v
        return None

    def body(self, code, language):
        cases = []
        for h, bucket in self.buckets:
            tests = []
            for v in bucket:
                tests += language.if_block(
                    language.names_equal(language.quote(v.name)),
                    language.found(v.reference),
                )
            cases.append((language.hex_literal(h), tests))
        return (
            language.fnv_lines("name")
            + language.switch("h", cases)
            + language.not_found()
        )


class BinarySearchPlan(ReversePlan):
    """Binary search over the names in byte order."""

    kind = "BinarySearch"

    def __init__(self, typeName, values, terminator=""):
        ReversePlan.__init__(self, typeName, values)
        self.entries = sorted(
            self.entries, key=lambda v: (v.name.encode("utf-8"), v.order)
        )
        self.table = NameTable([v.name for v in self.entries], terminator)

    @property
    def cost(self):
        return self.table.cost + self.valueCost()

    def find(self, name):
        key = name.encode("utf-8")
        lo, hi = 0, len(self.entries)
        while lo < hi:
            mid = lo + (hi - lo) // 2
            begin, end = self.table.span(mid)
            probe = self.table.blob[begin:end]
            if key == probe:
                return self.entries[mid]
            if key < probe:
                hi = mid
            else:
                lo = mid + 1
        return None

    def body(self, code, language):
        blob = code.addString("lookup_name", self.table.blob)
        index, _ = code.addArray(
            language.type_name("u%d" % self.table.bits),
            "lookup_index",
            self.table.index,
        )
        values, _ = code.addArray(
            self.typeName, "lookup_value", [v.reference for v in self.entries]
        )
        usize = language.usize
        loop = [
            language.declare_var(usize, "mid", "lo + (hi - lo) / 2"),
        ] + language.compare_lines(
            language.name_slice(blob, index, "mid"),
            language.found(language.array_index(values, "mid")),
            [language.assign("hi", "mid")],
            [language.assign("lo", "mid + 1")],
        )
        return (
            [
                language.declare_var(usize, "lo", language.usize_literal(0), True),
                language.declare_var(
                    usize, "hi", language.usize_literal(len(self.entries)), True
                ),
            ]
            + language.while_block("lo < hi", loop)
            + language.not_found()
        )


class DirectMapPlan(ReversePlan):
    """A static open-addressed hash table from name to value.

    The table has a power-of-two number of slots, at least twice the
    number of names.  Each slot holds an entry number plus one, or 0
    when empty; collisions probe the following slots.
    """

    kind = "DirectMap"

    def __init__(self, typeName, values, terminator=""):
        ReversePlan.__init__(self, typeName, values)
        self.entries = sorted(self.entries, key=lambda v: v.order)
        self.table = NameTable([v.name for v in self.entries], terminator)
        size = 1
        while size < 2 * len(self.entries):
            size <<= 1
        self.mask = size - 1
        self.slots = [0] * size
        for e, v in enumerate(self.entries):
            i = fnv1a32(v.name) & self.mask
            while self.slots[i]:
                i = (i + 1) & self.mask
            self.slots[i] = e + 1
        self.slotBits = indexBitsFor(len(self.entries))

    @property
    def cost(self):
        return (
            self.table.cost + self.valueCost() + len(self.slots) * self.slotBits // 8
        )

    def find(self, name):
        i = fnv1a32(name) & self.mask
        while self.slots[i]:
            e = self.slots[i] - 1
            if self.table.name(e) == name:
                return self.entries[e]
            i = (i + 1) & self.mask
        return None

    def body(self, code, language):
        blob = code.addString("map_name", self.table.blob)
        index, _ = code.addArray(
            language.type_name("u%d" % self.table.bits), "map_index", self.table.index
        )
        values, _ = code.addArray(
            self.typeName, "map_value", [v.reference for v in self.entries]
        )
        slots, _ = code.addArray(
            language.type_name("u%d" % self.slotBits), "map_slot", self.slots
        )
        usize = language.usize
        slot = language.array_index(slots, "i")
        loop = (
            [language.declare_var(usize, "e", language.as_usize("%s - 1" % slot))]
            + language.if_block(
                language.names_equal(language.name_slice(blob, index, "e")),
                language.found(language.array_index(values, "e")),
            )
            + [
                language.assign(
                    "i", "(i + 1) & %s" % language.usize_literal(self.mask)
                )
            ]
        )
        return (
            language.fnv_lines("name")
            + [
                language.declare_var(
                    usize,
                    "i",
                    language.as_usize(
                        "h & %s" % language.uint_literal(self.mask, "u32")
                    ),
                    True,
                )
            ]
            + language.while_block("%s != 0" % slot, loop)
            + language.not_found()
        )


def pick_reverse_plan(
    typeName: str,
    values: Sequence[Value],
    *,
    language: Union[str, "Language"] = "c",
    lookup_thresholds: Optional[Tuple[int, int]] = None,
) -> ReversePlan:
    """Choose how the reverse lookup is rendered.

    Args:
        typeName: Name of the enumeration type.
        values: The type's constants.  They are normalized here.
        language: Target language name or instance.
        lookup_thresholds: ``(switchMax, searchMax)``; defaults to
            ``lookupThresholds``.

    Returns:
        A HashedSwitchPlan, BinarySearchPlan or DirectMapPlan.
    """
    if lookup_thresholds is None:
        lookup_thresholds = lookupThresholds
    switchMax, searchMax = lookup_thresholds
    terminator = languageFor(language).terminator

    values = normalize(values)
    n = len(values)
    if n <= switchMax:
        return HashedSwitchPlan(typeName, values)
    if n <= searchMax:
        return BinarySearchPlan(typeName, values, terminator)
    return DirectMapPlan(typeName, values, terminator)


def lookupName(template, typeName):
    """
    >>> lookupName("{}FromString", "Pill")
    'PillFromString'
    """
    return template.replace("{}", typeName, 1)


def generate(
    typeName: str,
    values: Sequence[Value],
    *,
    language: Union[str, "Language"] = "c",
    lookup: str = "",
    private: bool = True,
    run_threshold: Optional[int] = None,
    lookup_thresholds: Optional[Tuple[int, int]] = None,
) -> str:
    """Generate the source block for one enumeration type.

    Args:
        typeName: Name of the enumeration type.
        values: The type's constants in declaration order.
        language: ``"c"``, ``"rust"`` or a Language instance.
        lookup: Name template for the reverse lookup function; ``{}`` is
            replaced by the type name.  Empty disables the lookup.
        private: Emit static/private declarations (default) or
            extern/``pub(crate)`` ones.
        run_threshold: See ``pick_forward_plan``.
        lookup_thresholds: See ``pick_reverse_plan``.

    Returns:
        The generated source text.

    Raises:
        InputError: If the values are empty or not integers.  Nothing is
            generated in that case.
        InternalInvariantError: If the generated text fails the
            consistency check; the text is attached to the error.
    """
    language = languageFor(language)
    declared = validateValues(values)
    code = Code(typeName)

    # Every constant, duplicates included, must keep its value.  Caller
    # supplied text is emitted verbatim; the default needs literal suffixes.
    for raw, v in zip(values, declared):
        literal = language.int_literal(v.value) if raw.text is None else v.text
        code.addCheck(v.reference, literal)

    forward = pick_forward_plan(
        typeName, declared, language=language, run_threshold=run_threshold
    )
    forward.genCode(code, language, private=private)

    if lookup:
        reverse = pick_reverse_plan(
            typeName, declared, language=language, lookup_thresholds=lookup_thresholds
        )
        reverse.genCode(code, lookupName(lookup, typeName), language, private=private)

    text = code.text(language=language, private=private)
    problem = checkSyntax(text)
    if problem is not None:
        raise InternalInvariantError(
            "invalid %s generated for %s: %s" % (language.name, typeName, problem),
            text,
        )
    return text


def generate_all(
    types: Dict[str, Sequence[Value]], **options: Any
) -> Tuple[Dict[str, str], Dict[str, InputError]]:
    """Generate several types independently.

    A type with bad input does not stop the others; it is returned in
    the failures dict instead.  Output that fails the consistency check
    is kept, with a warning.

    Returns:
        ``(outputs, failures)``, both keyed by type name in the order of
        *types*.

    Raises:
        ValueError: If several types would share one lookup function
            name because the ``lookup`` template has no ``{}``.
    """
    lookup = options.get("lookup", "")
    if lookup and "{}" not in lookup and len(types) > 1:
        raise ValueError(
            "lookup template %r needs {} to name one function per type" % lookup
        )
    outputs = collections.OrderedDict()
    failures = collections.OrderedDict()
    for typeName, values in types.items():
        try:
            outputs[typeName] = generate(typeName, values, **options)
        except InputError as e:
            failures[typeName] = e
        except InternalInvariantError as e:
            # A generator bug; the compiler will point at the bad line.
            log.warning("internal error: %s", e.diagnostic)
            log.warning("compile the output to analyze the error")
            outputs[typeName] = e.text
    return outputs, failures


if __name__ == "__main__":
    import doctest

    sys.exit(doctest.testmod().failed)
