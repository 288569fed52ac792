import json
import unittest
from unittest import mock

from cadence.errors import TranscriptionError
from cadence.models import AppConfig
from cadence.orchestrator import Caller, CommandOrchestrator
from cadence.streaming import TERMINAL_FRAMES, command_events, run_command, sse_frame, stream_command

from fakes import build_service, reply


def _parse(frames: list[str]) -> list[tuple[str, dict]]:
    parsed = []
    for frame in frames:
        event_line, data_line = frame.strip().split("\n")
        parsed.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return parsed


class StreamingTests(unittest.TestCase):
    def setUp(self) -> None:
        service, _ = build_service()
        self.resolver = mock.Mock()
        self.orchestrator = CommandOrchestrator(service, self.resolver, AppConfig())
        self.transcriber = mock.Mock()
        self.transcriber.is_oversized.return_value = False
        self.transcriber.transcribe.return_value = "what's on today"

    def test_frame_format(self) -> None:
        frame = sse_frame("response", {"success": True})

        self.assertEqual(frame, 'event: response\ndata: {"type": "response", "success": true}\n\n')

    def test_audio_yields_transcription_then_response(self) -> None:
        self.resolver.resolve.return_value = reply("Nothing today.")

        frames = _parse(list(stream_command(self.orchestrator, self.transcriber, Caller(), None, audio=b"abc")))

        self.assertEqual([frame_type for frame_type, _ in frames], ["transcription", "response"])
        self.assertEqual(frames[0][1]["text"], "what's on today")
        self.assertEqual(frames[1][1]["response"], "Nothing today.")

    def test_text_only_skips_transcription(self) -> None:
        self.resolver.resolve.return_value = reply("Nothing today.")

        frames = list(command_events(self.orchestrator, self.transcriber, Caller(), None, text="today?"))

        self.assertEqual([frame_type for frame_type, _ in frames], ["response"])
        self.transcriber.transcribe.assert_not_called()

    def test_transcription_failure_is_single_error_frame(self) -> None:
        self.transcriber.transcribe.side_effect = TranscriptionError("Transcription failed with HTTP 500")

        frames = list(command_events(self.orchestrator, self.transcriber, Caller(), None, audio=b"abc"))

        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0][0], "error")
        self.assertEqual(frames[0][1]["errorType"], "transcription")
        self.resolver.resolve.assert_not_called()

    def test_unexpected_exception_still_ends_with_error_frame(self) -> None:
        self.resolver.resolve.side_effect = RuntimeError("bug")

        frames = list(command_events(self.orchestrator, self.transcriber, Caller(), None, text="hello"))

        self.assertEqual([frame_type for frame_type, _ in frames], ["error"])
        self.assertEqual(frames[0][1]["errorType"], "internal")

    def test_oversized_audio_asks_for_summary_without_transcribing(self) -> None:
        self.transcriber.is_oversized.return_value = True

        frames = list(command_events(self.orchestrator, self.transcriber, Caller(), None, audio=b"x" * 10))

        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0][0], "response")
        self.assertTrue(frames[0][1]["needsClarification"])
        self.transcriber.transcribe.assert_not_called()

    def test_exactly_one_terminal_frame(self) -> None:
        scenarios = [
            {"resolve": reply("Hi."), "audio": b"abc"},
            {"resolve": RuntimeError("bug"), "audio": None},
            {"transcribe": TranscriptionError("nope"), "audio": b"abc"},
        ]
        for scenario in scenarios:
            with self.subTest(scenario=scenario):
                self.resolver.resolve.side_effect = None
                self.transcriber.transcribe.side_effect = scenario.get("transcribe")
                if isinstance(scenario.get("resolve"), Exception):
                    self.resolver.resolve.side_effect = scenario["resolve"]
                else:
                    self.resolver.resolve.return_value = scenario.get("resolve")
                frames = list(
                    command_events(
                        self.orchestrator, self.transcriber, Caller(), None, text="hello", audio=scenario["audio"]
                    )
                )
                terminal = [frame_type for frame_type, _ in frames if frame_type in TERMINAL_FRAMES]
                self.assertEqual(len(terminal), 1)
                self.assertIn(frames[-1][0], TERMINAL_FRAMES)

    def test_run_command_folds_transcription_into_body(self) -> None:
        self.resolver.resolve.return_value = reply("Nothing today.")

        body = run_command(self.orchestrator, self.transcriber, Caller(), None, audio=b"abc")

        self.assertEqual(body["transcription"], "what's on today")
        self.assertTrue(body["success"])


if __name__ == "__main__":
    unittest.main()
