from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from engine.templates import ChatTemplateExtractor, parse_chat_template
from tests.fakes import install_fake_llama_cli, posix_only, write_model


class TestParseChatTemplate:
    def test_first_long_enough_value_wins(self) -> None:
        lines = [
            "llama_model_loader: - kv  0: general.name str = tiny",
            "llama_model_loader: - kv 19: tokenizer.chat_template str = short",
            "llama_model_loader: - kv 20: tokenizer.chat_template str = '{% for m in messages %}{{ m }}{% endfor %}'",
            "llama_model_loader: - kv 21: tokenizer.chat_template str = {{ second }} ignored template",
        ]
        assert parse_chat_template(lines) == "{% for m in messages %}{{ m }}{% endfor %}"

    def test_value_split_on_first_equals_only(self) -> None:
        line = 'chat_template = "{% if a == b %}yes{% endif %}"'
        assert parse_chat_template([line]) == "{% if a == b %}yes{% endif %}"

    def test_no_template(self) -> None:
        assert parse_chat_template(["nothing here", "chat_template without separator"]) is None
        assert parse_chat_template([]) is None


@posix_only
class ChatTemplateExtractorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.model = write_model(self.root)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_extracts_and_memoizes_per_model(self) -> None:
        binary = install_fake_llama_cli(self.root)
        extractor = ChatTemplateExtractor(lambda: binary)
        first = await extractor.extract(self.model)
        second = await extractor.extract(self.model)
        self.assertEqual(first, "{% for m in messages %}{{ m.content }}{% endfor %}")
        self.assertEqual(second, first)
        self.assertEqual((binary.parent / "template_calls").read_text(), "1")
        self.assertEqual(extractor.cached(self.model), (True, first))

    async def test_missing_binary_is_not_cached(self) -> None:
        extractor = ChatTemplateExtractor(lambda: None)
        self.assertIsNone(await extractor.extract(self.model))
        self.assertEqual(extractor.cached(self.model), (False, None))

    async def test_spawn_failure_caches_none(self) -> None:
        missing = self.root / "bin" / "does-not-exist"
        extractor = ChatTemplateExtractor(lambda: missing)
        self.assertIsNone(await extractor.extract(self.model))
        self.assertEqual(extractor.cached(self.model), (True, None))


if __name__ == "__main__":
    unittest.main()
