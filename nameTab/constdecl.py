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
Read constant declarations.

Two formats are understood.  The text format::

    # Days of the week.
    type Weekday unsigned flags
    Monday = 1
    Tuesday = 0x2        // Tue

and the XML format::

    <constants>
      <type name="Weekday" signed="false" kind="flags">
        <const name="Monday" value="1"/>
        <const name="Tuesday" value="0x2" comment="Tue"/>
      </type>
    </constants>

Values are Python integer literals, not expressions.  The annotation (``// ...`` or
``comment=``) replaces the printed name when ``useAnnotationName`` is set.
"""

import re
import logging
from lxml import etree

from . import NameTabError, Kind, Options, TypeDeclaration, UnsupportedConstantKindError

__all__ = [
    "DeclarationSyntaxError",
    "load_declarations",
    "parse_text",
    "parse_xml",
]

logger = logging.getLogger(__name__)


class DeclarationSyntaxError(NameTabError, ValueError):
    """Malformed declaration input."""

    def __init__(self, message, filename=None, lineno=None):
        NameTabError.__init__(self, message)
        self.message = message
        self.filename = filename
        self.lineno = lineno

    def __str__(self):
        where = self.filename or "<input>"
        if self.lineno is not None:
            where = "%s:%d" % (where, self.lineno)
        return "%s: %s" % (where, self.message)


_typeRe = re.compile(r"type\s+(?P<name>[A-Za-z_]\w*)(?P<attrs>(\s+\w+)*)$")
_constRe = re.compile(
    r"(?P<name>[A-Za-z_]\w*)\s*=\s*(?P<value>[^/\s]+)\s*(//(?P<comment>.*))?$"
)

_signedness = {"signed": True, "unsigned": False}
for _t in ("int", "int8", "int16", "int32", "int64"):
    _signedness[_t] = True
    _signedness["u" + _t] = False
_signedness["uintptr"] = False

_kinds = {"enum": Kind.ENUM, "flags": Kind.FLAG, "flag": Kind.FLAG}


def _parseInt(text):
    """
    >>> _parseInt('0x10')
    16
    >>> _parseInt('-3')
    -3
    >>> _parseInt('0b101')
    5
    """
    return int(text, 0)


class _Builder:
    """Collects types and constants in file order."""

    def __init__(self, options, filename):
        self.options = options
        self.filename = filename
        self.types = {}
        self.order = []

    def declare(self, name, signed, kind, lineno):
        t = self.types.get(name)
        if t is None:
            t = self.types[name] = (TypeDeclaration(name, kind=kind), signed)
            self.order.append(name)
        elif t[0].kind is not kind or t[1] != signed:
            raise DeclarationSyntaxError(
                "type %s redeclared differently" % name, self.filename, lineno
            )
        return t

    def add(self, t, name, text, annotation, lineno):
        declaration, signed = t
        if name == "_":
            return
        try:
            value = _parseInt(text)
        except ValueError:
            raise DeclarationSyntaxError(
                "invalid integer %r for %s" % (text, name), self.filename, lineno
            )
        try:
            c = self.options.constant(name, value, signed, annotation)
        except UnsupportedConstantKindError as e:
            e.typeName = declaration.typeName
            raise
        declaration.values.append(c)

    def result(self):
        out = [self.types[name][0] for name in self.order]
        for d in out:
            logger.debug("%s: read %d constants", d.typeName, len(d.values))
        return out


def parse_text(text, options=None, filename=None):
    options = Options.coerce(options)
    builder = _Builder(options, filename)
    current = None
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        m = _typeRe.match(line)
        if m:
            signed, kind = True, Kind.ENUM
            for attr in m.group("attrs").split():
                if attr in _signedness:
                    signed = _signedness[attr]
                elif attr in _kinds:
                    kind = _kinds[attr]
                else:
                    raise DeclarationSyntaxError(
                        "unknown type attribute %r" % attr, filename, lineno
                    )
            current = builder.declare(m.group("name"), signed, kind, lineno)
            continue

        m = _constRe.match(line)
        if not m:
            raise DeclarationSyntaxError("can't parse %r" % line, filename, lineno)
        if current is None:
            raise DeclarationSyntaxError(
                "constant %s outside of a type" % m.group("name"), filename, lineno
            )
        builder.add(current, m.group("name"), m.group("value"), m.group("comment"), lineno)

    return builder.result()


def _xmlBool(elt, attr, default, filename):
    text = elt.get(attr)
    if text is None:
        return default
    if text in ("true", "1"):
        return True
    if text in ("false", "0"):
        return False
    raise DeclarationSyntaxError(
        "%s must be true or false, not %r" % (attr, text), filename, elt.sourceline
    )


def _xmlRequire(elt, attr, filename):
    text = elt.get(attr)
    if text is None:
        raise DeclarationSyntaxError(
            "<%s> needs a %s attribute" % (elt.tag, attr), filename, elt.sourceline
        )
    return text


def parse_xml(data, options=None, filename=None):
    options = Options.coerce(options)
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        root = etree.fromstring(data)
    except etree.XMLSyntaxError as e:
        raise DeclarationSyntaxError(e.msg, filename, e.lineno)
    if root.tag != "constants":
        raise DeclarationSyntaxError(
            "expected <constants>, got <%s>" % root.tag, filename, root.sourceline
        )

    builder = _Builder(options, filename)
    for elt in root.iterchildren("type"):
        name = _xmlRequire(elt, "name", filename)
        signed = _xmlBool(elt, "signed", True, filename)
        kindText = elt.get("kind", "enum")
        if kindText not in _kinds:
            raise DeclarationSyntaxError(
                "unknown kind %r" % kindText, filename, elt.sourceline
            )
        t = builder.declare(name, signed, _kinds[kindText], elt.sourceline)
        for const in elt.iterchildren("const"):
            builder.add(
                t,
                _xmlRequire(const, "name", filename),
                _xmlRequire(const, "value", filename).strip(),
                const.get("comment"),
                const.sourceline,
            )
    return builder.result()


def load_declarations(s, options=None):
    """Load type declarations from a file name or a file object.

    The format is picked from the content: input starting with ``<`` is
    XML.  Returns a list of TypeDeclaration, in file order.

    >>> import io
    >>> [d.typeName for d in load_declarations(io.StringIO("type A\\nX = 1\\n"))]
    ['A']
    """
    # Bad options fail before any input is read.
    options = Options.coerce(options)
    if hasattr(s, "read"):
        filename = getattr(s, "name", None)
        data = s.read()
    else:
        filename = str(s)
        with open(s, "rb") as f:
            data = f.read()
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DeclarationSyntaxError("not UTF-8: %s" % e, filename)
    else:
        text = data
        data = text.encode("utf-8")

    if text.lstrip().startswith("<"):
        return parse_xml(data, options, filename)
    return parse_text(text, options, filename)


if __name__ == "__main__":
    import sys
    import doctest

    sys.exit(doctest.testmod().failed)
