"""Placeholder trace for local development without a captured profile."""

from typing import Dict, List

MAIN = "0x1000"
EVENT_LOOP = "0x1100"
HANDLE_REQUEST = "0x2000"
PARSE = "0x3000"
QUERY = "0x3100"
RENDER = "0x3200"
READ = "0x4000"


def _request(start: int, query_durations: List[int]) -> Dict:
    children = [{"address": PARSE, "start": start + 10, "duration": 50}]
    cursor = start + 70
    for duration in query_durations:
        children.append(
            {
                "address": QUERY,
                "start": cursor,
                "duration": duration,
                "children": [{"address": READ, "start": cursor + 10, "duration": duration - 40}],
            },
        )
        cursor += duration + 10
    children.append({"address": RENDER, "start": cursor, "duration": 100})
    return {
        "address": HANDLE_REQUEST,
        "start": start,
        "end": cursor + 110,
        "children": children,
    }


SAMPLE_TRACE = {
    "name": "sample",
    "calls": [
        {
            "address": MAIN,
            "start": 0,
            "end": 9000,
            "children": [
                {
                    "address": EVENT_LOOP,
                    "start": 500,
                    "end": 8800,
                    "children": [
                        _request(1000, [200]),
                        _request(2000, [210]),
                        _request(3000, [190]),
                        _request(4000, [600, 100]),
                        _request(5000, [205]),
                        _request(6000, [195]),
                        _request(7000, [200]),
                    ],
                },
            ],
        },
    ],
}
