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
from .constdecl import load_declarations
import argparse
import logging
import sys

logger = logging.getLogger("nameTab")


def setup_logging(verbose=False):
    """Send nameTab's log records to stderr; stdout carries the code."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def print_analysis(results, *, file=None):
    print(
        f"{'Type':<20} {'Kind':<6} {'Values':<7} {'Runs':<5} "
        f"{'Strategy':<22} {'Index':<6} {'Bytes':<6}",
        file=file,
    )
    print("-" * 78, file=file)
    for result in results:
        if not result.ok:
            print(f"{result.typeName:<20} error: {result.error}", file=file)
            continue
        table = result.table
        layout = table.layout
        nValues = sum(len(run) for run in layout.runs)
        if layout.blob is not None:
            size = len(layout.blob.encode("utf-8"))
        else:
            size = sum(run.size for run in layout.runs)
        print(
            f"{table.typeName:<20} {table.kind.value:<6} {nValues:<7} "
            f"{len(layout.runs):<5} {layout.strategy.value:<22} "
            f"u{layout.indexBits:<5} {size:<6}",
            file=file,
        )


def main(args=None):
    parser = argparse.ArgumentParser(
        prog="nameTab",
        description="Generate compact name lookup tables for integer constants.",
    )
    parser.add_argument(
        "file",
        nargs="?",
        help="constant declarations to read (reads from stdin if not provided)",
    )
    parser.add_argument(
        "-i",
        "--input",
        type=str,
        metavar="FILE",
        help="read declarations from FILE",
    )
    parser.add_argument(
        "--type",
        type=str,
        metavar="T1,T2",
        help="comma-separated type names to generate (default: all)",
    )
    parser.add_argument(
        "--flags",
        action="store_true",
        help="treat the selected types as bit flag sets",
    )
    parser.add_argument(
        "--trimprefix",
        type=str,
        default="",
        metavar="PREFIX",
        help="trim PREFIX from the generated constant names",
    )
    parser.add_argument(
        "--linecomment",
        action="store_true",
        help="use line comment text as printed text when present",
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
        "--checks",
        action="store_true",
        help="emit compile-time checks that the constants still have their values",
    )
    parser.add_argument(
        "--name",
        default="",
        help="namespace prefix for generated symbols (default: none)",
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="show the chosen layout per type instead of generating code",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        metavar="N",
        help="pack types on N threads (default: 1)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        metavar="FILE",
        help="write output to FILE instead of stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="log layout decisions",
    )

    parsed = parser.parse_args(args)
    setup_logging(parsed.verbose)

    if parsed.input and parsed.file:
        parser.error("give the input either with -i or as an argument, not both")
    path = parsed.input or parsed.file

    options = Options(trimPrefix=parsed.trimprefix, useAnnotationName=parsed.linecomment)
    try:
        if path:
            declarations = load_declarations(path, options)
        else:
            declarations = load_declarations(sys.stdin, options)
    except (OSError, NameTabError) as e:
        parser.error(str(e))
    if not declarations and not parsed.type:
        parser.error("no types declared in input")

    if parsed.type:
        byName = {d.typeName: d for d in declarations}
        selected = []
        for name in parsed.type.split(","):
            name = name.strip()
            if not name:
                continue
            # Unknown types fail on their own below, like empty ones.
            selected.append(byName.get(name, TypeDeclaration(name)))
        declarations = selected

    if parsed.flags:
        for d in declarations:
            d.kind = Kind.FLAG

    results = pack_all(declarations, workers=parsed.jobs)
    status = 0
    for result in results:
        if not result.ok:
            logger.error("%s", result.error)
            status = 1

    if parsed.analyze:
        print_analysis(results)
        return status

    language = "rust" if parsed.rust else parsed.language
    lang = languageClasses[language](unsafe_array_access=parsed.unsafe)

    code = Code(parsed.name)
    for result in results:
        if result.ok:
            result.table.genCode(code, language=lang, private=False, checks=parsed.checks)

    # Handle output file
    if parsed.output:
        with open(parsed.output, "w") as f:
            code.print_code(language=lang, file=f)
    else:
        code.print_code(language=lang, file=sys.stdout)

    return status


if __name__ == "__main__":
    sys.exit(main())
