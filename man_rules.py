"""Man page alias rule generator.

Reads DocBook refentry sources, collects the page names and aliases each one
declares, and emits the generated meson fragment listing one
[name, section, [aliases...], conditional] record per page.

Usage:
    python man_rules.py man/*.xml > man/rules/meson.build
    python man_rules.py --entities build/man/custom-entities.ent \\
        --output man/rules/meson.build man/*.xml
"""

import argparse
import copy
import pprint
import re
import sys
import xml.etree.ElementTree as ET
from collections import defaultdict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from xml.etree import ElementInclude

EXCLUDED_PAGES = frozenset(
    {
        "systemd.directives.xml",
        "systemd.index.xml",
        "directives-template.xml",
    }
)
REFENTRY_TAG = "refentry"
RULES_VARIABLE = "manpages"
REGENERATE_COMMAND = "ninja -C build update-man-rules"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class RulesConfig:
    pages: tuple[Path, ...]
    entities: Path | None
    output: Path | None
    check: bool
    verbose: bool


CONFIG_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "CHECK_WITHOUT_OUTPUT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in CONFIG_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/file",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this argument.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate meson rules for man page aliases"
    )

    parser.add_argument("pages", type=Path, nargs="+", metavar="PAGE")
    parser.add_argument("--entities", type=Path, default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--check", action="store_true", default=False)
    parser.add_argument("--verbose", "-v", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def select_pages(
    pages: Iterable[Path], excluded: frozenset[str] = EXCLUDED_PAGES
) -> tuple[Path, ...]:
    """Drop index and directive pages, matched by base name only."""
    return tuple(Path(page) for page in pages if Path(page).name not in excluded)


def validate_config(args: argparse.Namespace) -> RulesConfig:
    if args.check and args.output is None:
        raise ConfigError(
            "CHECK_WITHOUT_OUTPUT",
            "--check requires --output.",
            "Pass --output with the rules file to compare against.",
        )

    pages = select_pages(args.pages)
    for page in pages:
        validate_path_exists(page, "PAGE", "Pass existing DocBook sources.")

    entities = (
        validate_path_exists(
            args.entities,
            "--entities",
            "Build the man pages first so custom-entities.ent is rendered,\n"
            "or omit --entities when the pages use no custom entities.",
        )
        if args.entities is not None
        else None
    )

    return RulesConfig(
        pages=pages,
        entities=entities,
        output=args.output,
        check=bool(args.check),
        verbose=bool(args.verbose),
    )


def build_config(argv: list[str] | None = None) -> RulesConfig:
    return validate_config(parse_args(argv))


# ===--- Page errors ---=== #


PAGE_ERROR_CODES = {
    "MALFORMED_XML",
    "READ_ERROR",
    "INCLUDE_FAILED",
    "MISSING_FIELD",
    "TITLE_MISMATCH",
    "DUPLICATE_PAGE",
}


class PageError(Exception):
    """Failure attributed to one documentation source file."""

    def __init__(self, code: str, message: str, path: Path):
        if code not in PAGE_ERROR_CODES:
            raise ValueError(f"Unknown page error code: {code}")
        super().__init__(f"{path}: {message}")
        self.code = code
        self.message = message
        self.path = path


class ParseError(PageError):
    pass


class ConsistencyError(PageError):
    pass


class DuplicatePageError(PageError):
    def __init__(self, page: str, path: Path, first_path: Path | None):
        if first_path is None or first_path == path:
            message = f"duplicate page name {page}"
        else:
            message = f"duplicate page name {page} (already declared by {first_path})"
        super().__init__("DUPLICATE_PAGE", message, path)
        self.page = page
        self.first_path = first_path


# ===--- Data model ---=== #


def qualified_name(page: str, section: str) -> str:
    return f"{page}.{section}"


def split_qualified_name(name: str) -> tuple[str, str]:
    base, _, section = name.rpartition(".")
    return base, section


@dataclass(frozen=True)
class DocumentationEntry:
    """Front matter of one refentry source.

    Attributes:
        canonical_name: Text of refmeta/refentrytitle.
        section_number: Text of refmeta/manvolnum, e.g. "1" or "8".
        declared_names: refnamediv/refname texts in document order. The first
            one must equal canonical_name.
        conditional_tag: Build feature gating the page; "" when unconditional.
    """

    canonical_name: str
    section_number: str
    declared_names: tuple[str, ...]
    conditional_tag: str = ""

    @property
    def target(self) -> str:
        return qualified_name(self.declared_names[0], self.section_number)

    @property
    def aliases(self) -> tuple[str, ...]:
        """Qualified form of every declared name, the target included."""
        return tuple(
            qualified_name(name, self.section_number) for name in self.declared_names
        )


class RuleTable:
    """{conditional => {alias => target}} accumulated across pages.

    A qualified alias may appear at most once in the whole table, whatever
    conditional it sits under. The table remembers which source registered
    each alias so duplicates can point at both files.
    """

    def __init__(self) -> None:
        self.rules: dict[str, dict[str, str]] = defaultdict(dict)
        self.sources: dict[str, Path] = {}
        self.page_count = 0

    def __contains__(self, alias: object) -> bool:
        return alias in self.sources

    def __len__(self) -> int:
        return len(self.sources)

    def owner(self, alias: str) -> Path | None:
        return self.sources.get(alias)

    def add(self, alias: str, target: str, conditional: str, source: Path) -> None:
        if alias in self.sources:
            raise DuplicatePageError(alias, source, self.sources[alias])
        self.rules[conditional][alias] = target
        self.sources[alias] = source

    def record_page(self) -> None:
        self.page_count += 1

    def items(self) -> Iterator[tuple[str, str, str]]:
        """Yield (conditional, alias, target) triples."""
        for conditional, group in self.rules.items():
            for alias, target in group.items():
                yield conditional, alias, target

    def conditionals(self) -> list[str]:
        return sorted(self.rules)


@dataclass(frozen=True)
class GroupedRule:
    base_name: str
    section: str
    aliases: tuple[str, ...]
    conditional: str

    @property
    def target(self) -> str:
        return qualified_name(self.base_name, self.section)

    def sort_key(self) -> tuple[str, str]:
        return self.target, self.conditional

    def as_list(self) -> list[object]:
        return [self.base_name, self.section, list(self.aliases), self.conditional]


# ===--- XML parsing ---=== #

_ENTITY_RE = re.compile(
    r"""<!ENTITY\s+(?P<name>[A-Za-z_][\w.-]*)\s+(?P<quote>["'])(?P<value>.*?)(?P=quote)\s*>""",
    re.DOTALL,
)


def parse_entities(text: str) -> dict[str, str]:
    """Return general entity declarations found in DTD text.

    Parameter entities (<!ENTITY % name ...>) never match because the name
    must follow the keyword directly.
    """
    return {m.group("name"): m.group("value") for m in _ENTITY_RE.finditer(text)}


def load_entities(path: Path | None) -> dict[str, str]:
    if path is None:
        return {}
    return parse_entities(Path(path).read_text(encoding="utf-8"))


def _parse_tree(path: Path, entities: dict[str, str]) -> ET.ElementTree:
    parser = ET.XMLParser(target=ET.TreeBuilder())
    parser.entity.update(entities)
    return ET.parse(path, parser=parser)


def _include_loader(entities: dict[str, str]):
    def _load(href: str, parse: str, encoding: str | None = None):
        if parse == "xml":
            return _parse_tree(Path(href), entities).getroot()
        return Path(href).read_text(encoding=encoding or "utf-8")

    return _load


_XPOINTER_ID_RE = re.compile(r"^(?:xpointer\(id\(['\"](?P<quoted>[^'\"]+)['\"]\)\)|(?P<bare>[\w.-]+))$")


def _xpointer_id(xpointer: str) -> str | None:
    """Return the element id addressed by a shorthand or id() xpointer."""
    match = _XPOINTER_ID_RE.match(xpointer.strip())
    if match is None:
        return None
    return match.group("quoted") or match.group("bare")


def resolve_local_includes(
    root: ET.Element, max_depth: int = ElementInclude.DEFAULT_MAX_INCLUSION_DEPTH
) -> None:
    """Replace href-less xi:include elements with a copy of their target.

    Such includes address an element of the same document by id through
    xpointer. Elements carrying an href are left for ElementInclude.

    Raises:
        ElementInclude.FatalIncludeError: Missing or unsupported xpointer,
            unknown id, or includes nested deeper than max_depth.
    """
    for _ in range(max_depth + 1):
        pending = [
            (parent, index, child)
            for parent in root.iter()
            for index, child in enumerate(parent)
            if child.tag == ElementInclude.XINCLUDE_INCLUDE and not child.get("href")
        ]
        if not pending:
            return

        by_id = {node.get("id"): node for node in root.iter() if node.get("id")}
        for parent, index, include in pending:
            xpointer = include.get("xpointer")
            if not xpointer:
                raise ElementInclude.FatalIncludeError(
                    "xi:include without href needs an xpointer"
                )
            target_id = _xpointer_id(xpointer)
            if target_id is None:
                raise ElementInclude.FatalIncludeError(
                    f"unsupported xpointer {xpointer!r}"
                )
            target = by_id.get(target_id)
            if target is None:
                raise ElementInclude.FatalIncludeError(
                    f"xpointer {xpointer!r} matches no element"
                )
            node = copy.deepcopy(target)
            node.tail = include.tail
            parent[index] = node

    raise ElementInclude.FatalIncludeError(
        "maximum xinclude depth reached resolving local includes"
    )


def parse_document(path: Path, entities: dict[str, str] | None = None) -> ET.Element:
    """Parse one source file and expand its xi:include elements.

    Raises:
        ParseError: The file cannot be read, is not well-formed XML, or an
            include cannot be resolved.
    """
    entities = entities or {}
    try:
        root = _parse_tree(path, entities).getroot()
    except ET.ParseError as err:
        raise ParseError("MALFORMED_XML", str(err), path) from err
    except OSError as err:
        raise ParseError("READ_ERROR", str(err), path) from err

    try:
        resolve_local_includes(root)
        ElementInclude.include(
            root, loader=_include_loader(entities), base_url=str(path)
        )
    except (ElementInclude.FatalIncludeError, ET.ParseError, OSError) as err:
        raise ParseError("INCLUDE_FAILED", str(err), path) from err
    return root


# ===--- Front matter extraction ---=== #


def _required_text(root: ET.Element, match: str, path: Path) -> str:
    node = root.find(match)
    text = (node.text or "").strip() if node is not None else ""
    if not text:
        raise ConsistencyError("MISSING_FIELD", f"missing <{match[2:]}>", path)
    return text


def read_entry(root: ET.Element, path: Path) -> DocumentationEntry | None:
    """Build a DocumentationEntry from a parsed root, or None for non-pages.

    Raises:
        ConsistencyError: Required metadata is missing, or refentrytitle does
            not match the first refname.
    """
    if root.tag != REFENTRY_TAG:
        return None

    conditional = root.get("conditional") or ""
    title = _required_text(root, "./refmeta/refentrytitle", path)
    section = _required_text(root, "./refmeta/manvolnum", path)
    names = tuple(
        (node.text or "").strip() for node in root.findall("./refnamediv/refname")
    )
    if not names or not all(names):
        raise ConsistencyError("MISSING_FIELD", "missing <refnamediv/refname>", path)

    if title != names[0]:
        raise ConsistencyError(
            "TITLE_MISMATCH",
            f"refmeta and refnamediv disagree: {title!r} != {names[0]!r}",
            path,
        )

    return DocumentationEntry(
        canonical_name=title,
        section_number=section,
        declared_names=names,
        conditional_tag=conditional,
    )


def extract_entry(
    path: Path, entities: dict[str, str] | None = None
) -> DocumentationEntry | None:
    return read_entry(parse_document(path, entities), path)


def add_rules(
    table: RuleTable, entry: DocumentationEntry, source: Path, verbose: bool = False
) -> None:
    """Register every declared name of entry as an alias of its target.

    All names are checked before the first insert so a rejected page leaves
    the table untouched.

    Raises:
        DuplicatePageError: A qualified name is already in the table or is
            declared twice by this page.
    """
    seen: set[str] = set()
    for alias in entry.aliases:
        if alias in table or alias in seen:
            raise DuplicatePageError(alias, source, table.owner(alias) or source)
        seen.add(alias)

    for alias in entry.aliases:
        table.add(alias, entry.target, entry.conditional_tag, source)
        if verbose:
            print(
                f"{alias} => {entry.target} [{entry.conditional_tag}]",
                file=sys.stderr,
            )
    table.record_page()


def create_rules(
    pages: Iterable[Path],
    entities: dict[str, str] | None = None,
    verbose: bool = False,
) -> RuleTable:
    """Process pages one at a time into a fresh RuleTable.

    Stops at the first failing page; the PageError propagates unchanged.
    """
    table = RuleTable()
    for page in pages:
        page = Path(page)
        if verbose:
            print(f"parsing {page}", file=sys.stderr)
        entry = extract_entry(page, entities)
        if entry is None:
            continue
        add_rules(table, entry, page, verbose)
    return table


# ===--- Rule table rendering ---=== #


RULES_HEADER: tuple[str, ...] = (
    "# SPDX-License-Identifier: LGPL-2.1-or-later",
    "",
    "# Do not edit. Generated by update-man-rules.py.",
    "# Update with:",
    f"#     {REGENERATE_COMMAND}",
    f"{RULES_VARIABLE} = [",
)
RULES_FOOTER: tuple[str, ...] = (
    "]",
    "# Really, do not edit.",
)


def group_rules(table: RuleTable) -> list[GroupedRule]:
    """Invert the table into one GroupedRule per (target, conditional).

    Targets without aliases still get a rule. Self-aliases are dropped.
    Result is sorted by (qualified target, conditional); alias lists are
    sorted alphabetically.
    """
    grouped: dict[tuple[str, str], list[str]] = defaultdict(list)
    for conditional, alias, target in table.items():
        group = grouped[(target, conditional)]
        if alias != target:
            group.append(split_qualified_name(alias)[0])

    rules: list[GroupedRule] = []
    for (target, conditional), aliases in sorted(grouped.items()):
        base_name, section = split_qualified_name(target)
        rules.append(
            GroupedRule(
                base_name=base_name,
                section=section,
                aliases=tuple(sorted(aliases)),
                conditional=conditional,
            )
        )
    return rules


def render_rules(rules: Iterable[GroupedRule]) -> str:
    """Render rules between the fixed header and footer.

    The list body is pprint output without its enclosing brackets. Returns
    text without a trailing newline.
    """
    body = pprint.pformat([rule.as_list() for rule in rules])[1:-1]
    return "\n".join((*RULES_HEADER, body, *RULES_FOOTER))


def make_rules_file(table: RuleTable) -> str:
    return render_rules(group_rules(table))


# ===--- Writer ---=== #


@dataclass(frozen=True)
class RulesWriteResult:
    """Result of writing the rules file.

    Attributes:
        path: Resolved path of the written file.
        line_count: Newline characters in the written content.
        byte_count: UTF-8 bytes written.
    """

    path: Path
    line_count: int
    byte_count: int


def write_rules(path: Path, content: str) -> RulesWriteResult:
    """Write content (plus a final newline) to path, creating parents.

    Raises:
        OSError: Propagated directly if the filesystem write fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = content + "\n"
    path.write_text(text, encoding="utf-8")
    return RulesWriteResult(
        path=path.resolve(),
        line_count=text.count("\n"),
        byte_count=len(text.encode("utf-8")),
    )


def rules_up_to_date(path: Path, content: str) -> bool:
    """True when path exists and holds exactly what write_rules would write."""
    path = Path(path)
    if not path.is_file():
        return False
    return path.read_text(encoding="utf-8") == content + "\n"


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class RulesSummary:
    """Counts reported after writing the rules file.

    Attributes:
        page_count: refentry pages that contributed rules.
        rule_count: GroupedRule records written.
        alias_count: Alias names across all rules (targets excluded).
        conditionals: (conditional, rule count) pairs sorted by conditional;
            "" is the unconditional group.
        write_result: File written by write_rules.
    """

    page_count: int
    rule_count: int
    alias_count: int
    conditionals: tuple[tuple[str, int], ...]
    write_result: RulesWriteResult


def build_rules_summary(
    table: RuleTable, rules: list[GroupedRule], write_result: RulesWriteResult
) -> RulesSummary:
    per_conditional: dict[str, int] = defaultdict(int)
    for rule in rules:
        per_conditional[rule.conditional] += 1
    return RulesSummary(
        page_count=table.page_count,
        rule_count=len(rules),
        alias_count=sum(len(rule.aliases) for rule in rules),
        conditionals=tuple(sorted(per_conditional.items())),
        write_result=write_result,
    )


def format_rules_summary(summary: RulesSummary) -> str:
    """Render a RulesSummary; returns text with one trailing newline."""
    lines: list[str] = []
    lines.append("Man page rules generated:")
    lines.append("")
    lines.append(f"  Pages:      {summary.page_count:>6}")
    lines.append(f"  Rules:      {summary.rule_count:>6}")
    lines.append(f"  Aliases:    {summary.alias_count:>6}")
    if summary.conditionals:
        lines.append("")
        lines.append("  Rules by conditional:")
        for conditional, count in summary.conditionals:
            label = conditional or "(always)"
            lines.append(f"    {label:<28} {count:>6}")
    lines.append("")
    lines.append(
        f"  Written: {summary.write_result.line_count:,} lines"
        f" to {summary.write_result.path}"
    )
    lines.append("")
    return "\n".join(lines)


def print_rules_summary(summary: RulesSummary) -> None:
    print(format_rules_summary(summary), end="")


# ===--- Main generation ---=== #


def run_update(config: RulesConfig) -> int:
    """Generate rules for config and emit, write or check them.

    Returns the process exit status: 0 on success, 1 when --check finds the
    output file stale.

    Raises:
        PageError: First page that failed; nothing has been written.
        OSError: Entities file unreadable or output write failure.
    """
    entities = load_entities(config.entities)
    table = create_rules(config.pages, entities, config.verbose)
    rules = group_rules(table)
    content = render_rules(rules)

    if config.output is None:
        print(content)
        return 0

    if config.check:
        if rules_up_to_date(config.output, content):
            return 0
        print(
            f"Stale: {config.output} does not match the generated rules.",
            file=sys.stderr,
        )
        print(f"Hint: run {REGENERATE_COMMAND}", file=sys.stderr)
        return 1

    result = write_rules(config.output, content)
    print_rules_summary(build_rules_summary(table, rules, result))
    return 0


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err

    try:
        status = run_update(config)
    except ParseError as err:
        print(f"Failed to process {err.path}", file=sys.stderr)
        print(f"Parse error [{err.code}]: {err.message}", file=sys.stderr)
        raise SystemExit(1) from err
    except ConsistencyError as err:
        print(f"Failed to process {err.path}", file=sys.stderr)
        print(f"Inconsistent page [{err.code}]: {err.message}", file=sys.stderr)
        raise SystemExit(1) from err
    except DuplicatePageError as err:
        print(f"Failed to process {err.path}", file=sys.stderr)
        print(f"Duplicate page [{err.code}]: {err.message}", file=sys.stderr)
        raise SystemExit(1) from err
    except (OSError, UnicodeDecodeError) as err:
        print(f"Error: {err}", file=sys.stderr)
        raise SystemExit(1) from err

    if status:
        raise SystemExit(status)


if __name__ == "__main__":
    main()
