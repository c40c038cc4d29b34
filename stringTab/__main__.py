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

from . import *
from . import runThreshold, lookupThresholds
import argparse
import collections
import logging
import sys


def parse_constant(token, typeNames, trimPrefix=""):
    """Parse ``[Type.]NAME=VALUE[:Display]`` into ``(type, name, value, display)``.

    >>> parse_constant("Pill.ASPIRIN=1", ["Pill"])
    ('Pill', 'ASPIRIN', 1, 'ASPIRIN')
    >>> parse_constant("PILL_ASPIRIN=0x10", ["Pill"], "PILL_")
    ('Pill', 'PILL_ASPIRIN', 16, 'ASPIRIN')
    >>> parse_constant("ASPIRIN=1:Aspirin 500mg", ["Pill"])
    ('Pill', 'ASPIRIN', 1, 'Aspirin 500mg')
    """
    if "=" not in token:
        raise ValueError("expected NAME=VALUE, got: %s" % token)
    left, right = token.split("=", 1)
    if "." in left:
        typeName, name = left.split(".", 1)
    elif len(typeNames) == 1:
        typeName, name = typeNames[0], left
    else:
        raise ValueError("constant %s needs a Type. prefix" % left)
    if ":" in right:
        right, display = right.split(":", 1)
    else:
        display = name[len(trimPrefix) :] if name.startswith(trimPrefix) else name
    return typeName, name, int(right, 0), display


def main(args=None):
    parser = argparse.ArgumentParser(
        prog="stringTab",
        description="Generate name tables and lookup functions for integer constants.",
    )
    parser.add_argument(
        "data",
        nargs="*",
        help=(
            "constants as [Type.]NAME=VALUE[:Display] "
            "(reads from stdin if not provided)"
        ),
    )
    parser.add_argument(
        "--type",
        required=True,
        help="comma-separated list of type names to generate",
    )
    parser.add_argument(
        "--lookup",
        default="",
        metavar="TEMPLATE",
        help='also generate a name lookup function; "{}" is replaced with the type',
    )
    parser.add_argument(
        "--trim-prefix",
        default="",
        metavar="PREFIX",
        help="trim PREFIX from constant names to form display names",
    )
    parser.add_argument(
        "--unsigned",
        action="store_true",
        help="the types are unsigned (default: signed)",
    )
    parser.add_argument(
        "--language",
        choices=["c", "rust"],
        default="c",
        help="output language (default: c)",
    )
    # Keep --rust as a shorthand for --language=rust.
    parser.add_argument(
        "--rust", action="store_true", help="shorthand for --language=rust"
    )
    parser.add_argument(
        "--unsafe",
        action="store_true",
        help="use unsafe array access (Rust only)",
    )
    parser.add_argument(
        "--public",
        action="store_true",
        help="emit extern / pub(crate) declarations instead of private ones",
    )
    parser.add_argument(
        "--run-threshold",
        type=int,
        default=None,
        help="most runs rendered as range tests (default: %d)" % runThreshold,
    )
    parser.add_argument(
        "--lookup-thresholds",
        type=str,
        default=None,
        metavar="LO,HI",
        help=(
            "value counts bounding the hashed switch and binary search "
            "lookups (default: %d,%d)" % lookupThresholds
        ),
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="show the chosen plans and table sizes instead of generating code",
    )
    parser.add_argument(
        "-i",
        "--input",
        type=str,
        metavar="FILE",
        help="read constants from FILE (default: positional args or stdin)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        metavar="FILE",
        help="write output to FILE instead of stdout",
    )

    parsed = parser.parse_args(args)

    logging.basicConfig(format="stringTab: %(message)s")

    # Read constants from input file, positional args, or stdin
    if parsed.input:
        with open(parsed.input, "r") as f:
            parsed.data = f.read().split()
        if not parsed.data:
            parser.error(f"no data in input file: {parsed.input}")
    elif not parsed.data:
        stdin_text = sys.stdin.read().strip()
        if not stdin_text:
            parser.error("no data provided (use positional args, -i, or stdin)")
        parsed.data = stdin_text.split()

    typeNames = [t for t in parsed.type.split(",") if t]
    if not typeNames:
        parser.error("no type names given")
    if parsed.lookup and "{}" not in parsed.lookup and len(typeNames) > 1:
        parser.error("--lookup needs {} when several types are given")

    lookup_thresholds = None
    if parsed.lookup_thresholds:
        try:
            lookup_thresholds = tuple(
                int(x) for x in parsed.lookup_thresholds.split(",")
            )
        except ValueError as e:
            parser.error(f"invalid lookup thresholds: {e}")
        if len(lookup_thresholds) != 2 or lookup_thresholds[0] > lookup_thresholds[1]:
            parser.error("lookup thresholds must be LO,HI with LO <= HI")

    # Constants of types not requested are ignored.
    types = collections.OrderedDict((t, []) for t in typeNames)
    for token in parsed.data:
        try:
            typeName, name, value, display = parse_constant(
                token, typeNames, parsed.trim_prefix
            )
        except ValueError as e:
            parser.error(f"invalid constant: {e}")
        if typeName in types:
            types[typeName].append(
                Value(display, name, value, signed=not parsed.unsigned)
            )

    language = "rust" if parsed.rust else parsed.language
    lang = languageClasses[language](unsafe_array_access=parsed.unsafe)

    if parsed.analyze:
        for typeName, values in types.items():
            if not values:
                print(f"{typeName}: no values")
                continue
            forward = pick_forward_plan(
                typeName, values, language=lang, run_threshold=parsed.run_threshold
            )
            reverse = pick_reverse_plan(
                typeName, values, language=lang, lookup_thresholds=lookup_thresholds
            )
            runs = splitIntoRuns(normalize(values))
            print(f"{typeName}: {len(forward.values)} values, {len(runs)} runs")
            print(f"  string: {forward.describe()}")
            print(f"  lookup: {reverse.describe()}")
        return 0

    outputs, failures = generate_all(
        types,
        language=lang,
        lookup=parsed.lookup,
        private=not parsed.public,
        run_threshold=parsed.run_threshold,
        lookup_thresholds=lookup_thresholds,
    )

    text = "\n".join(outputs.values())
    if parsed.output:
        with open(parsed.output, "w") as f:
            f.write(text)
    else:
        sys.stdout.write(text)

    for typeName, error in failures.items():
        print(f"stringTab: {typeName}: {error}", file=sys.stderr)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
