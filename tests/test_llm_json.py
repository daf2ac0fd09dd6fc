from llm_json import extract_json, strip_code_fences


def test_plain_json():
    assert extract_json('{"date": "2024-05-06"}') == {"date": "2024-05-06"}


def test_fenced_json():
    text = '```json\n{"locations": ["Salmgasse 10"]}\n```'
    assert strip_code_fences(text) == '{"locations": ["Salmgasse 10"]}'
    assert extract_json(text) == {"locations": ["Salmgasse 10"]}


def test_json_surrounded_by_prose():
    text = 'Here is the result:\n{"projectName": "Dark"}\nLet me know if you need more.'
    assert extract_json(text) == {"projectName": "Dark"}


def test_braces_inside_strings_do_not_break_matching():
    text = 'Result: {"projectName": "Set {A}", "notes": "a \\"quoted\\" }"} trailing'
    assert extract_json(text) == {"projectName": "Set {A}", "notes": 'a "quoted" }'}


def test_first_parseable_block_wins():
    text = "{not json} then {\"date\": \"2024-05-06\"}"
    assert extract_json(text) == {"date": "2024-05-06"}


def test_garbage_returns_none():
    assert extract_json("no json here") is None
    assert extract_json("{broken") is None
    assert extract_json("") is None
    assert extract_json(None) is None
