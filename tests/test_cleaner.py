from __future__ import annotations

from engine.cleaner import clean_response, split_fenced, strip_prompt_echo

FENCED = (
    "Here is the script:\n"
    "```python\n"
    "def f():\n"
    "    return  1   # spaced\n"
    "\n"
    "\n"
    "\n"
    "```\n"
    "Done  now [end of text]"
)
FENCE_BODY = "```python\ndef f():\n    return  1   # spaced\n\n\n\n```"


class TestCleanResponse:
    def test_prompt_echo_and_markers_removed(self) -> None:
        raw = "User: hi\n\nAssistant:  I'm   well\n\n\n\nThanks<|im_end|>"
        assert clean_response(raw) == "I'm well\n\nThanks"

    def test_short_assistant_tag_echo(self) -> None:
        assert strip_prompt_echo("User: hi\n\nA: yes") == " yes"
        assert clean_response("User: hi\n\nA: yes") == "yes"

    def test_echo_only_removed_when_output_starts_with_user_tag(self) -> None:
        text = "Sure.\n\nAssistant: more"
        assert strip_prompt_echo(text) == text

    def test_role_remnants_trimmed(self) -> None:
        assert clean_response("Assistant: Sure thing\nUser:") == "Sure thing"

    def test_end_markers_stripped(self) -> None:
        raw = "Answer</s><|eot_id|> ok<|endoftext|><|end|>"
        assert clean_response(raw) == "Answer ok"

    def test_continuation_markers_stripped(self) -> None:
        assert clean_response("First line\n> \nSecond line\n>") == "First line \nSecond line"

    def test_stop_fragments_are_word_bounded(self) -> None:
        assert clean_response("The answer is 4 by user") == "The answer is 4"
        assert clean_response("A bystander spoke to users") == "A bystander spoke to users"

    def test_fence_interior_preserved(self) -> None:
        cleaned = clean_response(FENCED)
        assert FENCE_BODY in cleaned
        assert cleaned.startswith("Here is the script:")
        assert cleaned.endswith("Done now")

    def test_markers_inside_fence_untouched(self) -> None:
        raw = "Use a heredoc:\n```sh\ncat <<EOF\nhello  world\nEOF\n```"
        assert clean_response(raw) == raw

    def test_blank_lines_collapse_next_to_fences(self) -> None:
        assert clean_response("Intro\n\n\n\n```py\nx = 1\n```") == "Intro\n\n```py\nx = 1\n```"
        assert clean_response("```py\nx = 1\n```\n\n\n\nOutro") == "```py\nx = 1\n```\n\nOutro"
        assert clean_response("```\na\n```\n\n\n\n```\nb\n```") == "```\na\n```\n\n```\nb\n```"

    def test_single_blank_line_around_fence_kept(self) -> None:
        raw = "Intro\n\n```py\nx = 1\n```\n\nOutro"
        assert clean_response(raw) == raw

    def test_no_triple_newlines_outside_fences(self) -> None:
        samples = [
            "Intro\n\n\n\n```py\nx = 1\n```\n\n\n\nOutro",
            "A\n\n\n\n\nB\n```\n```\n\n\nC",
            "```\ncode\n```\n\n\n\n\n\n```\nmore\n```\n\n\n\nend",
        ]
        for raw in samples:
            assert "\n\n\n" not in clean_response(raw)

    def test_idempotent(self) -> None:
        samples = [
            "User: hi\n\nAssistant:  I'm   well\n\n\n\nThanks<|im_end|>",
            FENCED,
            "  \n\n>  leading junk   by the user\n\n\n\n\nEOF",
            "Assistant:\nUser:",
            "```\nunterminated  fence\n\n\n\n",
            "",
        ]
        for raw in samples:
            once = clean_response(raw)
            assert clean_response(once) == once

    def test_empty_input(self) -> None:
        assert clean_response("") == ""
        assert clean_response("   \n\n ") == ""


class TestSplitFenced:
    def test_fence_lines_belong_to_code_runs(self) -> None:
        runs = split_fenced("a\n```\nx\n```\nb")
        assert runs == [(False, "a"), (True, "```\nx\n```"), (False, "b")]

    def test_indented_fence_toggles(self) -> None:
        runs = split_fenced("  ```js\ncode\n  ```")
        assert runs == [(True, "  ```js\ncode\n  ```")]
