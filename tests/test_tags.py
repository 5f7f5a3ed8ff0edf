from crkd.tags import (
    NO_VALID_TAGS,
    extract_all_tags_with_content,
    extract_nested_tags,
    extract_tag,
    extract_tag_lines,
    extract_tags,
    find_action_blocks,
    validate_structure,
)

ACTIONS = ("write_file", "read_file", "end_task")

# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def test_extract_tag_returns_trimmed_inner_text():
    assert extract_tag("before <path>  src/app.py \n</path> after", "path") == "src/app.py"

def test_extract_tag_absent_returns_none():
    assert extract_tag("no tags here", "path") is None
    assert extract_tag("<other>x</other>", "path") is None

def test_extract_tag_spans_lines():
    text = "<content>\nline one\nline two\n</content>"
    assert extract_tag(text, "content") == "line one\nline two"

def test_extract_tag_returns_first_match():
    assert extract_tag("<path>a</path><path>b</path>", "path") == "a"

def test_extract_tags_in_document_order():
    text = "<read_file><path>a.py</path>\n<path>b.py</path>\n<path>c.py</path></read_file>"
    assert extract_tags(text, "path") == ["a.py", "b.py", "c.py"]

def test_extract_tags_absent_returns_empty_list():
    assert extract_tags("nothing", "path") == []

def test_extract_tag_lines_trims_and_drops_blanks():
    text = "<files>\n  a.py  \n\n   \n b.py\n</files>"
    assert extract_tag_lines(text, "files") == ["a.py", "b.py"]

def test_extract_tag_lines_absent():
    assert extract_tag_lines("nothing", "files") == []

def test_extract_nested_tags_only_reads_first_parent():
    text = (
        "<group><item>one</item><item>two</item></group>"
        "<group><item>three</item></group>"
    )
    assert extract_nested_tags(text, "group", "item") == ["one", "two"]

def test_extract_nested_tags_missing_parent_or_child():
    assert extract_nested_tags("<item>x</item>", "group", "item") == []
    assert extract_nested_tags("<group>empty</group>", "group", "item") == []

def test_extract_all_tags_with_content_keeps_markup():
    text = "<a>1</a> text <a>2</a>"
    assert extract_all_tags_with_content(text, "a") == ["<a>1</a>", "<a>2</a>"]

def test_find_action_blocks_consumes_children():
    text = (
        "I'll write it.\n"
        "<write_file><path>x.py</path><content>print(1)</content></write_file>\n"
        "<end_task>done</end_task>"
    )
    blocks = find_action_blocks(text)
    assert [b.tag for b in blocks] == ["write_file", "end_task"]
    assert blocks[0].inner == "<path>x.py</path><content>print(1)</content>"
    assert blocks[1].full == "<end_task>done</end_task>"

# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------

def test_validate_structure_accepts_well_formed_pair():
    assert validate_structure("<end_task>Task completed</end_task>", ACTIONS) is None

def test_validate_structure_accepts_prose_mentioning_action_next_to_valid_tag():
    text = "Next I will use end_task.\n<read_file><path>a</path></read_file>"
    assert validate_structure(text, ACTIONS) is None

def test_validate_structure_flags_bare_action_name():
    error = validate_structure("write_file some content", ACTIONS)
    assert "without proper XML tag structure" in error
    assert "<write_file>content</write_file>" in error

def test_validate_structure_flags_unclosed_opening_tag():
    error = validate_structure("<write_file> some content", ACTIONS)
    assert "<write_file>" in error
    assert "without a matching closing tag" in error
    assert NO_VALID_TAGS in error

def test_validate_structure_flags_unmatched_closing_tag():
    error = validate_structure("some content </end_task>", ACTIONS)
    assert "without a matching opening tag" in error
    assert NO_VALID_TAGS in error

def test_validate_structure_without_any_tags():
    error = validate_structure("just chatting", ACTIONS)
    assert error.startswith(NO_VALID_TAGS)
    assert "<end_task>content</end_task>" in error
