from __future__ import annotations

from livecode.parsing.decoder import StreamDecoder


def test_codepoint_split_across_fragments_is_held_back() -> None:
    data = "héllo ✓".encode()
    split = data.index("✓".encode()) + 1
    decoder = StreamDecoder()

    assert decoder.feed(data[:split]) == "héllo "
    assert decoder.feed(data[split:]) == "✓"
    assert decoder.text == "héllo ✓"
    assert len(decoder) == len("héllo ✓")


def test_str_fragments_append_as_is() -> None:
    decoder = StreamDecoder()
    decoder.feed("abc")
    decoder.feed(b"def")
    decoder.feed("")
    assert decoder.text == "abcdef"


def test_finish_flushes_incomplete_sequence_as_replacement() -> None:
    decoder = StreamDecoder()
    decoder.feed("ok ".encode() + "✓".encode()[:2])
    assert decoder.text == "ok "
    assert decoder.finish() == "�"
    assert decoder.text == "ok �"
