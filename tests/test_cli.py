import json
from pathlib import Path

import pytest
from bs4 import BeautifulSoup

import mineru2md.cli as cli
import mineru2md.core as core


def _write_test_png(path: Path, *, width: int, height: int) -> None:
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(path)


def _span_line(span_type, **fields):
    return {"bbox": [0, 0, 1, 1], "spans": [dict({"type": span_type, "bbox": [0, 0, 1, 1]}, **fields)]}


def _create_layout_source(tmp_path: Path) -> Path:
    source_dir = tmp_path / "src"
    _write_test_png(source_dir / "images" / "figure.png", width=20, height=10)

    layout = {
        "_backend": "pipeline",
        "_version_name": "2.1.0",
        "pdf_info": [
            {
                "page_idx": 0,
                "page_size": [612, 792],
                "para_blocks": [
                    {"type": "title", "bbox": [0, 0, 1, 1], "lines": [_span_line("text", content="Intro")]},
                    {
                        "type": "text",
                        "bbox": [0, 0, 1, 1],
                        "lines": [
                            _span_line("text", content="Energy is "),
                            _span_line("inline_equation", content="E=mc^2"),
                        ],
                    },
                    {
                        "type": "image",
                        "bbox": [0, 0, 1, 1],
                        "blocks": [
                            {"type": "image_body", "lines": [_span_line("image", image_path="images/figure.png")]},
                            {"type": "image_caption", "lines": [_span_line("text", content="Figure 1")]},
                        ],
                    },
                ],
                "discarded_blocks": [
                    {"type": "header", "lines": [_span_line("text", content="Journal of Tests")]},
                    {"type": "page_number", "lines": [_span_line("text", content="1")]},
                ],
            },
            {
                "page_idx": 1,
                "page_size": [612, 792],
                "para_blocks": [
                    {
                        "type": "table",
                        "blocks": [
                            {"type": "table_body", "lines": [_span_line("table", image_path="images/missing.jpg")]},
                            {"type": "table_caption", "lines": [_span_line("text", content="Lost table")]},
                        ],
                    }
                ],
                "discarded_blocks": [
                    {"type": "page_footnote", "lines": [_span_line("text", content="1 See appendix.")]},
                ],
            },
        ],
    }
    path = source_dir / "layout.json"
    path.write_text(json.dumps(layout, ensure_ascii=False), encoding="utf-8")
    return path


def test_version_flags_print_version(capsys):
    assert cli.main(["--version"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__

    assert cli.main(["--ver"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__


def test_help_shows_usage(capsys):
    assert cli.main(["--help"]) == 0
    out = capsys.readouterr().out
    assert "mineru2md" in out
    assert cli.__version__ in out
    assert "INPUT_JSON" in out


def test_no_args_is_invalid(capsys):
    assert cli.main([]) == core.EXIT_INVALID_ARGS
    captured = capsys.readouterr()
    assert "Usage:" in captured.out
    assert "input JSON file is required" in captured.err


def test_unknown_option_shows_usage(capsys):
    assert cli.main(["layout.json", "--bogus"]) == 2
    assert "Usage:" in capsys.readouterr().out


def test_convert_writes_markdown_next_to_input(monkeypatch, tmp_path, capsys):
    monkeypatch.delenv(core.LOCALE_ENV, raising=False)
    source = _create_layout_source(tmp_path)

    assert cli.main([str(source)]) == 0

    out = capsys.readouterr().out
    assert f"Reading: {source.resolve()}" in out
    assert "Processed 2 pages" in out
    assert "Done!" in out

    md_path = source.with_suffix(".md")
    assert md_path.exists()
    md_text = md_path.read_text(encoding="utf-8")

    assert md_text.startswith(core.DOCUMENT_PREAMBLE + core.TOC_PLACEHOLDER + core.DOCUMENT_OPENING)
    assert '<a id="toc-0-intro"></a>\n\n## Intro\n\n' in md_text
    assert "Energy is  $E=mc^2$ \n\n" in md_text
    assert "<span>Journal of Tests · 1</span>" in md_text
    assert "Lost table" not in md_text
    assert "1 See appendix." in md_text
    assert md_text.index("Page 1") < md_text.index("1 See appendix.") < md_text.index("Page 2")
    assert md_text.endswith(core.DOCUMENT_CLOSING + core.ATTRIBUTION)

    soup = BeautifulSoup(md_text, "html.parser")
    figure = soup.find("figure")
    assert figure.find("img")["src"].startswith("data:image/png;base64,")
    assert figure.find("figcaption").get_text() == "Figure 1"


def test_convert_with_explicit_output_and_locale(tmp_path):
    source = _create_layout_source(tmp_path)
    target = tmp_path / "out" / "doc.md"

    assert cli.main([str(source), str(target), "--locale", "zh"]) == 0

    md_text = target.read_text(encoding="utf-8")
    assert "第 1 页" in md_text
    assert "第 2 页" in md_text
    assert not source.with_suffix(".md").exists()


def test_locale_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv(core.LOCALE_ENV, "zh")
    source = _create_layout_source(tmp_path)

    assert cli.main([str(source)]) == 0
    assert "第 1 页" in source.with_suffix(".md").read_text(encoding="utf-8")


def test_conversion_output_is_stable(tmp_path):
    source = _create_layout_source(tmp_path)
    first = tmp_path / "first.md"
    second = tmp_path / "second.md"

    assert cli.main([str(source), str(first)]) == 0
    assert cli.main([str(source), str(second)]) == 0
    assert first.read_bytes() == second.read_bytes()


def test_missing_input_returns_input_error(tmp_path, capsys):
    missing = tmp_path / "absent.json"

    assert cli.main([str(missing)]) == core.EXIT_INPUT_ERROR
    assert "File not found" in capsys.readouterr().err


@pytest.mark.parametrize(
    "payload,message",
    [
        ("{broken", "Invalid JSON"),
        ("[1, 2]", "JSON object"),
        ('{"pages": []}', "pdf_info"),
    ],
)
def test_malformed_input_returns_input_error(tmp_path, capsys, payload, message):
    source = tmp_path / "layout.json"
    source.write_text(payload, encoding="utf-8")

    assert cli.main([str(source)]) == core.EXIT_INPUT_ERROR
    assert message in capsys.readouterr().err
    assert not source.with_suffix(".md").exists()


def test_unwritable_output_returns_output_error(tmp_path, capsys):
    source = _create_layout_source(tmp_path)
    target = tmp_path / "as_dir.md"
    target.mkdir()

    assert cli.main([str(source), str(target)]) == core.EXIT_OUTPUT_ERROR
    assert "Error writing output" in capsys.readouterr().err


def test_missing_input_argument_is_invalid(capsys):
    assert cli.main(["--debug"]) == core.EXIT_INVALID_ARGS
    assert "input JSON file is required" in capsys.readouterr().err


def test_invalid_locale_is_rejected(tmp_path, capsys):
    source = _create_layout_source(tmp_path)

    assert cli.main([str(source), "--locale", "fr"]) == core.EXIT_INVALID_ARGS
    assert "Unsupported locale: fr" in capsys.readouterr().err


def test_invalid_max_depth_is_rejected(tmp_path, capsys):
    source = _create_layout_source(tmp_path)

    assert cli.main([str(source), "--max-depth", "0"]) == core.EXIT_INVALID_ARGS
    assert "--max-depth" in capsys.readouterr().err


def test_lone_surrogate_in_text_is_replaced(tmp_path):
    source = tmp_path / "layout.json"
    source.write_text(
        '{"pdf_info": [{"page_idx": 0, "para_blocks": '
        '[{"type": "text", "lines": [{"spans": [{"type": "text", "content": "a\\ud800b"}]}]}]}]}',
        encoding="utf-8",
    )

    assert cli.main([str(source)]) == 0
    assert "a?b" in source.with_suffix(".md").read_text(encoding="utf-8")


def test_deeply_nested_json_returns_input_error(tmp_path, capsys):
    source = tmp_path / "layout.json"
    source.write_text('{"pdf_info": ' + "[" * 100000, encoding="utf-8")

    assert cli.main([str(source)]) == core.EXIT_INPUT_ERROR
    assert "nesting too deep" in capsys.readouterr().err
    assert not source.with_suffix(".md").exists()
