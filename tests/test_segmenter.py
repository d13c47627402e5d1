import pytest

from paper_scan.errors import EmptyDocument, ErrorKind
from paper_scan.models import FlattenedDocument, SectionKind, Span
from paper_scan.segmenter import extract_authors, segment

SCENARIO = (
    "\\documentclass{article}\\title{T}\\begin{document}\\maketitle"
    "\\begin{abstract}A.\\end{abstract}\\section{Intro}Hi $x=1$.\\end{document}"
)


def flat(text, origin="main.tex"):
    return FlattenedDocument(spans=(Span(origin, 0, text),))


def test_title_abstract_heading():
    sections = segment(flat(SCENARIO))
    assert [s.kind for s in sections] == [SectionKind.TITLE, SectionKind.ABSTRACT, SectionKind.HEADING]
    assert [s.order for s in sections] == [0, 1, 2]
    title, abstract, heading = sections
    assert title.heading == "T"
    assert abstract.body == "A."
    assert heading.heading == "Intro"
    assert heading.level == 1
    assert heading.body == "Hi $x=1$."
    assert all(s.origin == "main.tex" for s in sections)


def test_order_follows_position():
    text = (
        "\\begin{document}Opening words.\\section{A}x\\subsection{B}y"
        "\\subsubsection{C}z\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [
        SectionKind.PARAGRAPH, SectionKind.HEADING, SectionKind.HEADING, SectionKind.HEADING,
    ]
    assert [s.level for s in sections[1:]] == [1, 2, 3]
    positions = [s.position for s in sections]
    assert positions == sorted(positions)
    assert [s.order for s in sections] == list(range(4))


def test_no_section_macros_is_one_paragraph():
    sections = segment(flat("\\begin{document}Just a short note.\\end{document}"))
    assert len(sections) == 1
    assert sections[0].kind == SectionKind.PARAGRAPH
    assert sections[0].raw == "Just a short note."


def test_unknown_macros_are_transparent():
    text = "\\begin{document}\\section{A}one \\textbf{two} \\newtheorem{x} three\\end{document}"
    sections = segment(flat(text))
    assert len(sections) == 1
    assert "three" in sections[0].body


def test_appendix_marks_following_headings():
    text = (
        "\\begin{document}\\section{Intro}a\\appendix\\section{Proofs}b"
        "\\subsection{Lemma}c\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [SectionKind.HEADING, SectionKind.APPENDIX, SectionKind.APPENDIX]
    assert [s.in_appendix for s in sections] == [False, True, True]
    assert sections[2].level == 2


def test_appendices_environment():
    text = "\\begin{document}\\section{Intro}a\\begin{appendices}\\section{Extra}b\\end{appendices}\\end{document}"
    sections = segment(flat(text))
    assert sections[-1].kind == SectionKind.APPENDIX
    assert sections[-1].heading == "Extra"


def test_bibliography_sections():
    text = (
        "\\begin{document}\\section{Intro}a"
        "\\begin{thebibliography}{9}\\bibitem{k} K.\\end{thebibliography}\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [SectionKind.HEADING, SectionKind.BIBLIOGRAPHY]
    assert "\\bibitem{k}" in sections[1].body

    sections = segment(flat("\\begin{document}\\section{Intro}a\\printbibliography\\end{document}"))
    assert sections[-1].kind == SectionKind.BIBLIOGRAPHY


def test_bibliography_only_is_empty():
    text = "\\begin{document}\\begin{thebibliography}{9}\\bibitem{a} A.\\end{thebibliography}\\end{document}"
    with pytest.raises(EmptyDocument) as excinfo:
        segment(flat(text))
    assert excinfo.value.kind == ErrorKind.EMPTY

    with pytest.raises(EmptyDocument):
        segment(flat("\\begin{document}  \\end{document}"))


def test_abstract_heading_fallback():
    text = "\\begin{document}\\section*{Abstract}We study things.\\section{Intro}x\\end{document}"
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [SectionKind.ABSTRACT, SectionKind.HEADING]
    assert sections[0].body == "We study things."


def test_front_text_before_abstract_heading_is_dropped():
    text = (
        "\\begin{document}\\maketitle Some front text."
        "\\section*{Abstract}A.\\section{Intro}B\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [SectionKind.ABSTRACT, SectionKind.HEADING]
    assert sections[0].body == "A."


def test_headings_inside_verbatim_are_text():
    text = (
        "\\begin{document}\\section{Usage}u\\begin{verbatim}\n\\section{Fake}\n\\end{verbatim}"
        " and \\verb|\\section{Inline}|\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.heading for s in sections] == ["Usage"]
    assert "\\section{Fake}" in sections[0].body


def test_only_first_abstract_counts():
    text = (
        "\\begin{document}\\begin{abstract}First.\\end{abstract}\\section{Intro}"
        "\\begin{abstract}Quoted.\\end{abstract}\\end{document}"
    )
    sections = segment(flat(text))
    assert [s.kind for s in sections] == [SectionKind.ABSTRACT, SectionKind.HEADING]
    assert "Quoted." in sections[1].body


def test_origin_follows_spans():
    doc = FlattenedDocument(spans=(
        Span("main.tex", 0, "\\begin{document}\\section{A}a"),
        Span("intro.tex", 0, "\\section{B}b"),
        Span("main.tex", 40, "\\end{document}"),
    ))
    sections = segment(doc)
    assert [s.origin for s in sections] == ["main.tex", "intro.tex"]


def test_extract_authors():
    text = "\\author{Alice Smith\\thanks{Funded by X, Y} \\and Bob Jones\\\\ University of Z}"
    assert extract_authors(text) == ["Alice Smith", "Bob Jones"]


def test_extract_authors_multiple_declarations():
    text = "\\author[1]{Ann Lee}\n\\author[2]{Tom Fox$^{2}$}\n\\affiliation{Somewhere}"
    assert extract_authors(text) == ["Ann Lee", "Tom Fox"]
