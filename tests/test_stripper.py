import random

from paper_scan.models import FlattenedDocument, Span
from paper_scan.stripper import strip_comments, strip_document


def test_remove_comments():
    """Test comment removal functionality."""
    test_cases = [
        ("No comments", "No comments"),
        ("Line with % comment", "Line with"),
        ("% Full comment line", ""),
        ("Command \\% not comment", "Command \\% not comment"),
        ("Multiple % comments % here", "Multiple"),
        ("Line with both \\% and % real comment", "Line with both \\% and"),
        ("Double backslash \\\\% is a comment", "Double backslash \\\\"),
    ]

    for input_text, expected in test_cases:
        assert strip_comments(input_text).rstrip() == expected


def test_full_line_comments_leave_no_blank_line():
    assert strip_comments("a\n% full line\nb") == "a\nb"
    assert strip_comments("a % tail\nb") == "a\nb"


def test_verbatim_passes_through():
    text = "\\begin{verbatim}\n50% done\n\\end{verbatim}\nText % gone"
    assert strip_comments(text) == "\\begin{verbatim}\n50% done\n\\end{verbatim}\nText"

    listing = "\\begin{lstlisting}[language=Python]\nx = 1 % 2\n\\end{lstlisting}"
    assert strip_comments(listing) == listing


def test_inline_verb_passes_through():
    assert strip_comments("\\verb|%x| % gone") == "\\verb|%x|"


def test_escaped_percent_in_math():
    assert strip_comments("$50\\%$ % c") == "$50\\%$"


def test_comment_environment_removed():
    result = strip_comments("a\n\\begin{comment}\nhidden % x\n\\end{comment}\nb")
    assert "hidden" not in result
    assert result.startswith("a\n")
    assert result.endswith("\nb")


def test_iffalse_block_removed():
    result = strip_comments("keep \\iffalse drop \\ifx a b nested \\fi still drop \\fi done")
    assert "drop" not in result
    assert result.startswith("keep")
    assert result.endswith("done")


def test_unterminated_iffalse_kept():
    assert strip_comments("keep \\iffalse never closed") == "keep \\iffalse never closed"


NOISE_TOKENS = [
    "\\iffalse", "\\if", "\\ifx", "\\iff", "\\fi", "%", "%c", "\\\\", "\\%",
    "\\begin{comment}", "\\end{comment}", "\\begin{verbatim}", "\\end{verbatim}",
    "\\verb|%|", "a", "$x$",
]


def test_idempotent_on_random_token_streams():
    rng = random.Random(20240117)
    for _ in range(3000):
        tokens = [rng.choice(NOISE_TOKENS) for _ in range(rng.randint(1, 12))]
        text = "".join(token + rng.choice([" ", "\n"]) for token in tokens)
        once = strip_comments(text)
        assert strip_comments(once) == once, repr(text)


def test_commented_conditional_inside_iffalse_is_ignored():
    assert strip_comments("keep \\iffalse % \\ifx\nhidden \\fi done") == "keep  done"


def test_iff_is_not_a_conditional():
    assert strip_comments("a \\iffalse $p\\iff q$ \\fi b") == "a  b"


def test_fi_inside_verbatim_does_not_close_iffalse():
    assert strip_comments("a \\iffalse \\begin{verbatim}\\fi\\end{verbatim} \\fi b") == "a  b"
    assert strip_comments("a \\iffalse \\verb|\\fi| \\fi b") == "a  b"


def test_strip_document_per_span():
    flat = FlattenedDocument(spans=(
        Span("main.tex", 0, "A % open comment"),
        Span("sec.tex", 0, "visible\n"),
        Span("main.tex", 20, "% only a comment\n"),
    ))
    stripped = strip_document(flat)
    assert stripped.text == "Avisible\n"
    assert [span.origin for span in stripped.spans] == ["main.tex", "sec.tex"]
