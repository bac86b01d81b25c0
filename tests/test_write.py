import io
import re

from flowlogs2metrics.write import WriteNone, WriteStdout

LINE = re.compile(r"^[A-Z][a-z]{2} [ \d]\d \d{2}:\d{2}:\d{2}\.\d{3}: (.*)$")


def test_write_none_records_and_returns():
    writer = WriteNone()
    data = [{"key": "test"}]
    assert writer.write(data) is data
    assert writer.prev_records == [{"key": "test"}]


def test_new_write_none_equals_empty():
    assert WriteNone() == WriteNone(prev_records=[])


def test_write_stdout_formats_entries():
    stream = io.StringIO()
    writer = WriteStdout(stream)
    data = [{"key": "test"}]
    assert writer.write(data) is data
    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    match = LINE.match(lines[0])
    assert match is not None
    assert match.group(1) == "map[key:test]"


def test_write_stdout_sorts_keys_and_formats_values():
    stream = io.StringIO()
    WriteStdout(stream).write([{"b": 2, "a": None, "c": [1, 2], "d": True}])
    match = LINE.match(stream.getvalue().rstrip("\n"))
    assert match.group(1) == "map[a:<nil> b:2 c:[1 2] d:true]"


def test_write_stdout_one_line_per_entry(capsys):
    WriteStdout().write([{"x": 1}, {"y": 2}])
    lines = capsys.readouterr().out.splitlines()
    assert [LINE.match(line).group(1) for line in lines] == ["map[x:1]", "map[y:2]"]


def test_new_write_stdout_equals_default():
    assert WriteStdout() == WriteStdout(stream=None)