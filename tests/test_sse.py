import json
import os
import sys
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from knowledge_chat.sse import format_sse_event, sse_frames


def parse_frame(frame: str):
    lines = frame.strip().split("\n")
    event_type = lines[0].replace("event: ", "")
    data = json.loads(lines[1].replace("data: ", ""))
    return event_type, data


class TestSseFormatting(unittest.TestCase):
    def test_format_sse_event_emits_event_and_json_data(self):
        payload = format_sse_event("chunk", {"seq": 1, "content": "你好"})

        self.assertTrue(payload.startswith("event: chunk\n"))
        self.assertTrue(payload.endswith("\n\n"))
        lines = [line for line in payload.split("\n") if line.startswith("data: ")]
        self.assertEqual(len(lines), 1)
        self.assertIn("你好", lines[0])

        data = json.loads(lines[0].replace("data: ", ""))
        self.assertEqual(data["seq"], 1)
        self.assertEqual(data["content"], "你好")


class TestSseFrames(unittest.IsolatedAsyncioTestCase):
    async def test_frames_are_numbered_in_order(self):
        async def events():
            yield {"type": "init", "assistant_message_id": 2}
            yield {"type": "chunk", "content": "a"}
            yield {"type": "done", "content": "a", "reasoning": None}

        frames = [frame async for frame in sse_frames(events())]
        parsed = [parse_frame(f) for f in frames]

        self.assertEqual([p[0] for p in parsed], ["init", "chunk", "done"])
        self.assertEqual([p[1]["seq"] for p in parsed], [1, 2, 3])
        self.assertTrue(parsed[0][1]["ts"].endswith("Z"))
        self.assertNotIn("type", parsed[1][1])

    async def test_closing_frames_closes_source(self):
        closed = []

        async def events():
            try:
                yield {"type": "chunk", "content": "a"}
                yield {"type": "chunk", "content": "b"}
            finally:
                closed.append(True)

        frames = sse_frames(events())
        await frames.__anext__()
        await frames.aclose()
        self.assertEqual(closed, [True])


if __name__ == "__main__":
    unittest.main()
