"""Unit tests for stable-study notification normalization."""
import re

import pytest

from intake.services.errors import InvalidNotification
from intake.services.notification import decode_body, generate_request_id, parse_stable_study_notification


def test_single_key_object_uses_key_as_study_id():
    notification = parse_stable_study_notification({"abc123": ""})
    assert notification.orthanc_study_id == "abc123"
    assert notification.shape == "object_key"


def test_bare_string_is_trimmed():
    notification = parse_stable_study_notification("  9442d79e-1a2b  \n")
    assert notification.orthanc_study_id == "9442d79e-1a2b"
    assert notification.shape == "string"


def test_study_id_field():
    notification = parse_stable_study_notification({"studyId": " s-1 ", "other": 1})
    assert notification.orthanc_study_id == "s-1"
    assert notification.shape == "studyId_field"


def test_orthanc_change_event_uses_id_field():
    event = {"ChangeType": "StableStudy", "ID": "orthanc-abc", "Path": "/studies/orthanc-abc"}
    notification = parse_stable_study_notification(event)
    assert notification.orthanc_study_id == "orthanc-abc"
    assert notification.shape == "ID_field"


def test_study_id_field_wins_over_single_key_rule():
    assert parse_stable_study_notification({"studyId": "xyz"}).orthanc_study_id == "xyz"


@pytest.mark.parametrize("body", ["", "   ", {}, {"a": 1, "b": 2}, {"   ": ""}, {"studyId": ""}, [], None, 42])
def test_unusable_payloads_are_rejected(body):
    with pytest.raises(InvalidNotification):
        parse_stable_study_notification(body)


def test_decode_body_json_and_text():
    assert decode_body(b'{"abc": ""}') == {"abc": ""}
    assert decode_body(b'"abc"') == "abc"
    assert decode_body(b"abc123") == "abc123"


def test_decode_body_form_encoded():
    assert decode_body(b"abc123=", "application/x-www-form-urlencoded") == {"abc123": ""}
    assert decode_body(b"abc123=", "application/x-www-form-urlencoded; charset=utf-8") == {"abc123": ""}
    assert decode_body(b"studyId=abc&studyId=def", "application/x-www-form-urlencoded") == {"studyId": ["abc", "def"]}
    # without the form content type the body stays text
    assert decode_body(b"abc123=") == "abc123="


def test_form_encoded_single_key_resolves_to_study_id():
    notification = parse_stable_study_notification(decode_body(b"abc123=", "application/x-www-form-urlencoded"))
    assert notification.orthanc_study_id == "abc123"
    assert notification.shape == "object_key"


def test_generated_request_id_format():
    assert re.fullmatch(r"stable_\d+_[0-9a-z]{9}", generate_request_id())
    assert generate_request_id() != generate_request_id()
