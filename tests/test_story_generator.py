import json
import unittest
from typing import Any, Dict
from unittest import mock

import storyteller
from tests.test_retry import _DummyAsyncClient, _DummyResponse, patch_client, patch_sleep


def make_config(**overrides: Any) -> storyteller.StoryConfig:
    values: Dict[str, Any] = {"api_key": "test-key", "api_base": "https://gemini.test/v1beta"}
    values.update(overrides)
    return storyteller.StoryConfig(**values)


def gemini_reply(text: str) -> Dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


STORY_JSON = json.dumps(
    {
        "storySegment": "Вы стоите у ворот заброшенного замка. Ветер воет в башнях.",
        "choices": ["Войти в замок", "Обойти стену", "Вернуться в деревню"],
    },
    ensure_ascii=False,
)


class BuildRequestBodyTests(unittest.TestCase):
    def test_forwards_history_and_forces_schema(self) -> None:
        generator = storyteller.GeminiStoryGenerator(make_config())
        history = [
            {"role": "user", "parts": [{"text": "Начать игру"}]},
            {"role": "model", "parts": [{"text": STORY_JSON}]},
        ]
        body = generator.build_request_body(history)

        self.assertEqual(body["contents"], history)
        self.assertIsNot(body["contents"], history)
        config = body["generationConfig"]
        self.assertEqual(config["responseMimeType"], "application/json")
        schema = config["responseSchema"]
        self.assertEqual(schema["propertyOrdering"], ["storySegment", "choices"])
        self.assertEqual(schema["required"], ["storySegment", "choices"])
        self.assertEqual(schema["properties"]["choices"]["items"], {"type": "STRING"})

    def test_system_instruction_carries_marker_and_language_rule(self) -> None:
        generator = storyteller.GeminiStoryGenerator(make_config())
        body = generator.build_request_body([])
        instruction = body["systemInstruction"]["parts"][0]["text"]

        self.assertIn("Russian", instruction)
        self.assertIn(storyteller.DEFAULT_TERMINAL_MARKER, instruction)
        self.assertNotIn(storyteller.TERMINAL_MARKER_TOKEN, instruction)
        self.assertEqual(body["contents"], [])

    def test_substituted_prompt_is_used(self) -> None:
        config = make_config(system_prompt="Narrate. End with <<TERMINAL_MARKER>>", terminal_marker="FIN:")
        body = storyteller.GeminiStoryGenerator(config).build_request_body([])
        self.assertEqual(body["systemInstruction"]["parts"][0]["text"], "Narrate. End with FIN:")

    def test_url_uses_configured_model(self) -> None:
        generator = storyteller.GeminiStoryGenerator(make_config(text_model="gemini-test"))
        self.assertEqual(generator.url, "https://gemini.test/v1beta/models/gemini-test:generateContent")


class ParseStoryPayloadTests(unittest.TestCase):
    def test_parses_segment_and_choices(self) -> None:
        story = storyteller.parse_story_payload(STORY_JSON)
        self.assertTrue(story.story_segment.startswith("Вы стоите"))
        self.assertEqual(len(story.choices), 3)
        self.assertEqual(
            list(story.model_dump(by_alias=True).keys()),
            ["storySegment", "choices"],
        )

    def test_terminal_payload_has_no_choices(self) -> None:
        story = storyteller.parse_story_payload('{"storySegment": "КОНЕЦ ИГРЫ: тьма.", "choices": []}')
        self.assertEqual(story.choices, [])

    def test_invalid_json_describes_parse_failure(self) -> None:
        with self.assertRaises(storyteller.MalformedResponseError) as ctx:
            storyteller.parse_story_payload('{"storySegment": "обрыв')
        self.assertIn("Failed to parse story JSON", ctx.exception.message)

    def test_wrong_choice_count_is_rejected(self) -> None:
        with self.assertRaises(storyteller.MalformedResponseError) as ctx:
            storyteller.parse_story_payload('{"storySegment": "...", "choices": ["a", "b"]}')
        self.assertIn("0 or 3 choices", ctx.exception.message)

    def test_missing_segment_is_rejected(self) -> None:
        with self.assertRaises(storyteller.MalformedResponseError):
            storyteller.parse_story_payload('{"choices": []}')

    def test_non_object_is_rejected(self) -> None:
        with self.assertRaises(storyteller.MalformedResponseError):
            storyteller.parse_story_payload('["storySegment"]')


class ExtractCandidateTextTests(unittest.TestCase):
    def test_joins_text_parts(self) -> None:
        data = {"candidates": [{"content": {"parts": [{"text": '{"a":'}, {"thought": True}, {"text": " 1}"}]}}]}
        self.assertEqual(storyteller._extract_candidate_text(data), '{"a": 1}')

    def test_missing_candidates_is_malformed(self) -> None:
        for data in ({}, {"candidates": []}, {"candidates": [{}]}, None, {"candidates": [{"content": {}}]}):
            with self.subTest(data=data):
                with self.assertRaises(storyteller.MalformedResponseError) as ctx:
                    storyteller._extract_candidate_text(data)
                self.assertIn("Malformed response", ctx.exception.message)

    def test_empty_text_is_malformed(self) -> None:
        with self.assertRaises(storyteller.MalformedResponseError):
            storyteller._extract_candidate_text({"candidates": [{"content": {"parts": [{"text": ""}]}}]})


class GenerateTests(unittest.IsolatedAsyncioTestCase):
    async def test_posts_to_gemini_and_returns_story(self) -> None:
        client = _DummyAsyncClient([_DummyResponse(gemini_reply(STORY_JSON))])
        generator = storyteller.GeminiStoryGenerator(make_config())
        history = [{"role": "user", "parts": [{"text": "Начать"}]}]

        with patch_client(client), patch_sleep():
            story = await generator.generate(history)

        self.assertEqual(story.choices[0], "Войти в замок")
        call = client.calls[0]
        self.assertEqual(call["url"], generator.url)
        self.assertEqual(call["headers"]["x-goog-api-key"], "test-key")
        self.assertEqual(call["json"]["contents"], history)

    async def test_retries_then_parses(self) -> None:
        client = _DummyAsyncClient(
            [_DummyResponse({}, status_code=500, text="busy"), _DummyResponse(gemini_reply(STORY_JSON))]
        )
        generator = storyteller.GeminiStoryGenerator(make_config())
        with patch_client(client), patch_sleep() as sleep:
            story = await generator.generate([])

        self.assertEqual(len(story.choices), 3)
        sleep.assert_awaited_once_with(1)

    async def test_malformed_candidate_is_not_retried(self) -> None:
        client = _DummyAsyncClient([_DummyResponse({"promptFeedback": {"blockReason": "SAFETY"}})])
        generator = storyteller.GeminiStoryGenerator(make_config())
        with patch_client(client), patch_sleep() as sleep:
            with self.assertRaises(storyteller.MalformedResponseError):
                await generator.generate([])

        self.assertEqual(len(client.calls), 1)
        sleep.assert_not_awaited()

    async def test_exhaustion_propagates(self) -> None:
        client = _DummyAsyncClient([_DummyResponse({}, status_code=403, text="denied")] * 2)
        generator = storyteller.GeminiStoryGenerator(make_config(max_attempts=2))
        with patch_client(client), patch_sleep():
            with self.assertRaises(storyteller.UpstreamRequestError) as ctx:
                await generator.generate([])

        self.assertIn("2 attempts", ctx.exception.message)

    async def test_logs_generated_segment(self) -> None:
        client = _DummyAsyncClient([_DummyResponse(gemini_reply(STORY_JSON))])
        generator = storyteller.GeminiStoryGenerator(make_config())
        with patch_client(client), patch_sleep(), mock.patch.object(storyteller.logger, "info") as info:
            await generator.generate([])
        info.assert_called_once()
