import pytest

from cloudvault.server.utils.names import (
    child_path,
    name_key,
    normalize_tags,
    path_from_names,
    sanitize_name,
    split_extension,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("report.pdf", "report.pdf"),
        ("  spaced   out  ", "spaced out"),
        ('a<b>c:d"e/f\\g|h?i*j', "a_b_c_d_e_f_g_h_i_j"),
        ("tab\there", "tabhere"),
        ("../etc", "__etc"),
        ("\x00\x1f", ""),
    ],
)
def test_sanitize_name(name: str, expected: str) -> None:
    assert sanitize_name(name) == expected


def test_name_key() -> None:
    assert name_key("Docs") == name_key("DOCS") == "docs"
    assert name_key("Straße") == name_key("STRASSE")


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("report.PDF", ("report", "pdf")),
        ("archive.tar.gz", ("archive.tar", "gz")),
        ("README", ("README", "")),
        (".profile", (".profile", "")),
        ("trailing.", ("trailing.", "")),
    ],
)
def test_split_extension(name: str, expected: tuple[str, str]) -> None:
    assert split_extension(name) == expected


def test_paths() -> None:
    assert child_path("/", "Docs") == "/Docs"
    assert child_path("/Docs", "Sub") == "/Docs/Sub"
    assert child_path("/Docs/Sub", "Deep") == "/Docs/Sub/Deep"
    assert path_from_names([]) == "/"
    assert path_from_names(["Docs", "Sub"]) == "/Docs/Sub"


def test_normalize_tags() -> None:
    assert normalize_tags([" work ", "work", "", "  ", "Work", "home"]) == [
        "work",
        "Work",
        "home",
    ]
    assert normalize_tags([]) == []
