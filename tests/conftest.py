import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import man_rules  # noqa: E402

DOCTYPE = (
    '<!DOCTYPE refentry PUBLIC "-//OASIS//DTD DocBook XML V4.5//EN"\n'
    '  "http://www.oasis-open.org/docbook/xml/4.5/docbookx.dtd" [\n'
    '<!ENTITY % entities SYSTEM "custom-entities.ent" >\n'
    "%entities;\n"
    "]>\n"
)


def render_page(
    title: str,
    section: str,
    names: list[str],
    conditional: str | None = None,
    body: str = "",
) -> str:
    conditional_attr = f' conditional="{conditional}"' if conditional else ""
    refnames = "\n".join(f"    <refname>{name}</refname>" for name in names)
    return (
        '<?xml version="1.0"?>\n'
        f"{DOCTYPE}"
        f'<refentry id="{title}"{conditional_attr}>\n'
        "  <refmeta>\n"
        f"    <refentrytitle>{title}</refentrytitle>\n"
        f"    <manvolnum>{section}</manvolnum>\n"
        "  </refmeta>\n"
        "  <refnamediv>\n"
        f"{refnames}\n"
        f"    <refpurpose>{title} page</refpurpose>\n"
        "  </refnamediv>\n"
        f"{body}"
        "</refentry>\n"
    )


@pytest.fixture
def man_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "man"
    directory.mkdir()
    return directory


@pytest.fixture
def write_page(man_dir: Path) -> Callable[..., Path]:
    def _write_page(
        filename: str,
        title: str,
        section: str = "1",
        names: list[str] | None = None,
        conditional: str | None = None,
        body: str = "",
    ) -> Path:
        page = man_dir / filename
        page.write_text(
            render_page(
                title,
                section,
                [title] if names is None else names,
                conditional,
                body,
            ),
            encoding="utf-8",
        )
        return page

    return _write_page


@pytest.fixture
def write_xml(man_dir: Path) -> Callable[[str, str], Path]:
    def _write_xml(filename: str, text: str) -> Path:
        path = man_dir / filename
        path.write_text(text, encoding="utf-8")
        return path

    return _write_xml


@pytest.fixture
def make_args(man_dir: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "pages": [],
            "entities": None,
            "output": None,
            "check": False,
            "verbose": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_table() -> Callable[..., man_rules.RuleTable]:
    def _make_table(
        *entries: tuple[str, str, str], source: Path = Path("test.xml")
    ) -> man_rules.RuleTable:
        """Build a table from (conditional, alias, target) triples."""
        table = man_rules.RuleTable()
        for conditional, alias, target in entries:
            table.add(alias, target, conditional, source)
        return table

    return _make_table
