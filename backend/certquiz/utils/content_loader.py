"""Parsing utilities that turn a JSON content bundle into normalized
certification/topic/question dictionaries.

Expected shape::

    {"certifications": [
        {"id": "aws-cloud-practitioner", "name": "...", "topics": [
            {"id": "iam", "name": "...", "orderIndex": 1, "questions": [
                {"question": "...", "options": ["a", "b"],
                 "correctAnswer": 0, "explanation": "..."}
            ]}
        ]}
    ]}

Both camelCase and snake_case keys are accepted.
"""

import json
from pathlib import Path
from typing import Dict, List, Union


def load_content_bundle(source: Union[str, Path, bytes]) -> Dict:
    """Read a bundle from a path or raw bytes and return the decoded JSON."""
    if isinstance(source, bytes):
        raw = source.decode('utf-8')
    else:
        raw = Path(source).read_text(encoding='utf-8')
    data = json.loads(raw)
    if isinstance(data, list):
        data = {'certifications': data}
    if not isinstance(data, dict) or not isinstance(data.get('certifications'), list):
        raise ValueError('content bundle must contain a "certifications" list')
    return data


def _pick(item: Dict, *keys, default=None):
    for k in keys:
        if k in item and item[k] is not None:
            return item[k]
    return default


def normalize_certification(item: Dict) -> Dict:
    return {
        'id': str(_pick(item, 'id', default='')).strip(),
        'name': str(_pick(item, 'name', default='')).strip(),
        'description': _pick(item, 'description'),
        'level': _pick(item, 'level'),
        'provider': _pick(item, 'provider', default='aws'),
        'is_active': bool(_pick(item, 'isActive', 'is_active', default=True)),
    }


def normalize_topic(item: Dict, certification_id: str) -> Dict:
    """Map a raw topic object onto model field names.

    A non-numeric `orderIndex` is kept as given so `validate_topic` can
    report it.
    """
    order_index = _pick(item, 'orderIndex', 'order_index', default=0)
    try:
        order_index = int(order_index)
    except (TypeError, ValueError):
        pass
    return {
        'id': str(_pick(item, 'id', default='')).strip(),
        'certification_id': certification_id,
        'name': str(_pick(item, 'name', default='')).strip(),
        'description': _pick(item, 'description'),
        'order_index': order_index,
        'is_active': bool(_pick(item, 'isActive', 'is_active', default=True)),
    }


def validate_topic(topic: Dict):
    """Validate a normalized topic dictionary and raise ValueError on error."""
    if not topic.get('id') or not topic.get('name'):
        raise ValueError('topic needs id and name')
    order_index = topic.get('order_index')
    if not isinstance(order_index, int) or isinstance(order_index, bool):
        raise ValueError('orderIndex must be an integer')


def normalize_question(item: Dict) -> Dict:
    """Map a raw question object onto model field names."""
    options = _pick(item, 'options', default=[])
    return {
        'question': str(_pick(item, 'question', 'question_text', default='')).strip(),
        'options': [str(o) for o in options] if isinstance(options, list) else options,
        'correct_answer': _pick(item, 'correctAnswer', 'correct_answer'),
        'explanation': _pick(item, 'explanation', default=''),
        'difficulty': _pick(item, 'difficulty', default='medium'),
        'is_active': bool(_pick(item, 'isActive', 'is_active', default=True)),
    }


def validate_question(q: Dict):
    """Validate a normalized question dictionary and raise ValueError on error."""
    if not q.get('question'):
        raise ValueError('missing or empty question text')
    options = q.get('options')
    if not isinstance(options, list) or len(options) < 2:
        raise ValueError('options must be a list with at least two entries')
    if any(not o.strip() for o in options):
        raise ValueError('options must not be empty strings')
    correct = q.get('correct_answer')
    if not isinstance(correct, int) or isinstance(correct, bool):
        raise ValueError('correctAnswer must be an integer index')
    if correct < 0 or correct >= len(options):
        raise ValueError('correctAnswer is out of range for options')
    if not isinstance(q.get('explanation'), str) or not q['explanation'].strip():
        raise ValueError('missing explanation')


def iter_bundle(bundle: Dict) -> List[Dict]:
    """Flatten a bundle into a list of normalized certification entries.

    Each entry carries its normalized `topics`, and each topic its raw
    `questions` list normalized but not yet validated.
    """
    out = []
    for cert_item in bundle.get('certifications', []):
        cert = normalize_certification(cert_item)
        topics = []
        for topic_item in cert_item.get('topics', []) or []:
            topic = normalize_topic(topic_item, cert['id'])
            topic['questions'] = [normalize_question(q) for q in topic_item.get('questions', []) or []]
            topics.append(topic)
        cert['topics'] = topics
        out.append(cert)
    return out
