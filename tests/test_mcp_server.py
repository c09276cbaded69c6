import asyncio

from url2epub import mcp_server
from url2epub.config import DEFAULT_AUTHOR


def test_compile_epub_tool_builds_config(tmp_path, monkeypatch) -> None:
    seen = {}

    async def fake_pipeline(urls, config):
        seen["urls"] = urls
        seen["config"] = config
        return config.output_root / "book.epub"

    monkeypatch.setattr(mcp_server, "run_pipeline", fake_pipeline)

    result = asyncio.run(
        mcp_server.compile_epub(
            ["https://a.example", "https://b.example"],
            output_dir=str(tmp_path / "books"),
            title="Reading List",
        )
    )

    assert result == str((tmp_path / "books").resolve() / "book.epub")
    assert seen["urls"] == ["https://a.example", "https://b.example"]
    assert seen["config"].metadata.title == "Reading List"
    assert seen["config"].metadata.author == DEFAULT_AUTHOR
    assert seen["config"].work_dir is None


def test_compile_epub_tool_passes_author(tmp_path, monkeypatch) -> None:
    async def fake_pipeline(urls, config):
        return config.output_root / config.metadata.author

    monkeypatch.setattr(mcp_server, "run_pipeline", fake_pipeline)

    result = asyncio.run(
        mcp_server.compile_epub(["https://a.example"], output_dir=str(tmp_path), author="Ada")
    )

    assert result.endswith("Ada")
