from __future__ import annotations

from datetime import timezone

import orjson
import pytest

from transcript_digest.errors import SourceFormatError, SourceReadError
from transcript_digest.loading.loader import TranscriptLoader
from transcript_digest.storage import LocalStorage


def _loader() -> TranscriptLoader:
    return TranscriptLoader(LocalStorage())


def _message(**overrides) -> dict:
    message = {"id": "m1", "seqId": 1, "content": "hi", "author": {"id": "u1", "name": "Ann"}}
    message.update(overrides)
    return message


def test_load_decodes_export_into_ordered_records(transcript_file) -> None:
    path = transcript_file(3)

    records = _loader().load(str(path))

    assert [r.position for r in records] == [1, 2, 3]
    assert [r.id for r in records] == ["m0", "m1", "m2"]
    assert records[0].author.name == "User 0"
    assert records[1].content == "hello 1"
    assert records[0].timestamp is not None
    assert records[0].timestamp.tzinfo is not None
    assert records[0].timestamp.astimezone(timezone.utc).minute == 0


def test_parse_accepts_position_spellings_and_string_author() -> None:
    raw = orjson.dumps(
        {
            "messages": [
                {"id": "a", "position": 4, "content": "x", "author": "ann"},
                {"id": "b", "seq_id": 9, "content": "y", "author": {"id": "u2", "name": "Bo"}},
            ]
        }
    )

    records = _loader().parse(raw)

    assert [r.position for r in records] == [4, 9]
    assert records[0].author.id == "ann"
    assert records[0].author.name == "ann"


def test_parse_defaults_missing_content_and_timestamp() -> None:
    message = _message()
    del message["content"]

    (record,) = _loader().parse(orjson.dumps({"messages": [message]}))

    assert record.content == ""
    assert record.char_count == 0
    assert record.timestamp is None


def test_parse_empty_message_list_yields_no_records() -> None:
    assert _loader().parse(b'{"messages": []}') == []


def test_load_missing_file_raises_read_error(tmp_path) -> None:
    missing = tmp_path / "nope.json"

    with pytest.raises(SourceReadError) as exc_info:
        _loader().load(str(missing))

    assert exc_info.value.stage == "loading"
    assert str(missing) in str(exc_info.value)


def test_parse_malformed_json_raises_format_error() -> None:
    with pytest.raises(SourceFormatError) as exc_info:
        _loader().parse(b'{"messages": [', path="broken.json")

    assert "malformed JSON" in exc_info.value.errors[0]
    assert "broken.json" in str(exc_info.value)


@pytest.mark.parametrize(
    "document",
    [
        {"records": []},
        [{"id": "m1", "seqId": 1}],
        {"messages": "not a list"},
    ],
)
def test_parse_wrong_top_level_shape_raises_format_error(document) -> None:
    with pytest.raises(SourceFormatError):
        _loader().parse(orjson.dumps(document))


@pytest.mark.parametrize(
    "message",
    [
        _message(seqId="1"),
        _message(seqId=-1),
        _message(id=""),
        _message(content=42),
        _message(author={"id": "u1"}),
        _message(timestamp="yesterday-ish"),
    ],
)
def test_parse_rejects_wrongly_typed_fields(message) -> None:
    with pytest.raises(SourceFormatError) as exc_info:
        _loader().parse(orjson.dumps({"messages": [message]}))

    assert any(err.startswith("messages.0") for err in exc_info.value.errors)


def test_parse_rejects_missing_position() -> None:
    message = _message()
    del message["seqId"]

    with pytest.raises(SourceFormatError):
        _loader().parse(orjson.dumps({"messages": [message]}))


def test_parse_rejects_non_increasing_positions() -> None:
    raw = orjson.dumps(
        {"messages": [_message(id="a", seqId=2), _message(id="b", seqId=2)]}
    )

    with pytest.raises(SourceFormatError) as exc_info:
        _loader().parse(raw)

    assert "expected > 2" in str(exc_info.value)


def test_format_error_lists_at_most_five_problems() -> None:
    messages = [{"id": f"m{i}", "seqId": "bad"} for i in range(8)]

    with pytest.raises(SourceFormatError) as exc_info:
        _loader().parse(orjson.dumps({"messages": messages}))

    assert len(exc_info.value.errors) > 5
    assert "more)" in str(exc_info.value)
