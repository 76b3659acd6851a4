"""
Data Loader Script - seeds a sample test template into the engine via API.

Creates a three-section template (timed verbal, timed quant, untimed
writing) and opens a hosted session for a demo user so the attempt can be
driven straight away from /docs.

Usage:
    python load_data.py                              # Uses default URL
    python load_data.py http://localhost:8000         # Custom API URL
    python load_data.py http://localhost:8000 template.json   # Custom template
"""

import json
import os
import sys

import httpx


SAMPLE_TEMPLATE = {
    "title": "Sample Full-Length Practice Test",
    "exam_name": "GRE",
    "test_type": "full_length",
    "sections": [
        {
            "name": "Verbal Reasoning",
            "duration_minutes": 2,
            "questions": [
                {
                    "question_text": "Choose the word closest in meaning to LACONIC.",
                    "options": ["verbose", "terse", "cheerful", "lazy"],
                    "correct_option_index": 1,
                    "difficulty": "easy",
                    "marks": 1,
                    "negative_marks": 0.25
                },
                {
                    "question_text": "The author's primary purpose is to:",
                    "stimulus": "Researchers long assumed that ...",
                    "options": ["refute a theory", "describe a method", "question an assumption"],
                    "correct_option_index": 2,
                    "difficulty": "medium",
                    "marks": 1,
                    "negative_marks": 0.25
                }
            ]
        },
        {
            "name": "Quantitative Reasoning",
            "duration_minutes": 3,
            "questions": [
                {
                    "question_text": "If 3x + 5 = 20, what is x?",
                    "options": ["3", "5", "15", "25"],
                    "correct_option_index": 1,
                    "difficulty": "easy",
                    "marks": 1
                },
                {
                    "question_text": "Enter the value of 12% of 250.",
                    "question_type": "free_text",
                    "difficulty": "easy"
                }
            ]
        },
        {
            "name": "Analytical Writing",
            "questions": [
                {
                    "question_text": "Discuss the extent to which you agree with the claim.",
                    "question_type": "essay"
                }
            ]
        }
    ]
}


def post_json(client: httpx.Client, url: str, data: dict) -> dict:
    resp = client.post(url, json=data)
    resp.raise_for_status()
    return resp.json()


def main():
    api_url = sys.argv[1] if len(sys.argv) > 1 else os.getenv("ENGINE_API_URL", "http://localhost:8000")

    template = SAMPLE_TEMPLATE
    if len(sys.argv) > 2:
        print(f"Loading template from: {sys.argv[2]}")
        with open(sys.argv[2], "r") as f:
            template = json.load(f)

    with httpx.Client(base_url=api_url, timeout=30.0) as client:
        try:
            created = post_json(client, "/api/templates", template)
        except httpx.HTTPStatusError as e:
            print(f"HTTP Error {e.response.status_code}: {e.response.text}")
            sys.exit(1)

        print("=" * 60)
        print("TEMPLATE CREATED")
        print("=" * 60)
        print(f"  Template ID: {created['id']}")
        print(f"  Title:       {created['title']}")
        for section in created["sections"]:
            duration = section["duration_seconds"]
            timing = f"{duration // 60:02d}:{duration % 60:02d}" if duration else "untimed"
            print(f"  [{section['position']}] {section['name']}: "
                  f"{len(section['question_ids'])} questions, {timing}")
        print("=" * 60)

        session = post_json(client, "/api/sessions",
                            {"user_id": "demo-user", "template_id": created["id"]})
        print()
        print(f"  Demo session opened: attempt {session['id']} ({session['status']})")
        print(f"  Clock: {session['session']['clock']}")
        print()
        print(f"Drive it at {api_url}/docs under Sessions.")


if __name__ == "__main__":
    main()
