"""
Tests for stored record decoding
"""
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from exceptions import RecordDecodeError
from schemas import Answer, Doubt, Resource, ResourceType, Subject, UserProfile, decode_record, decode_records

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _doubt_raw(**overrides):
    raw = {
        '_id': ObjectId(),
        'author_id': 'u1',
        'author_name': 'Asha Rao',
        'subject': 'DBMS',
        'description': 'What is a candidate key?',
        'created_at': CREATED,
        'is_resolved': False,
    }
    raw.update(overrides)
    return raw


class TestDecodeRecord:

    def test_mongo_id_becomes_id(self):
        raw = _doubt_raw()
        doubt = decode_record(Doubt, raw, 'doubts')
        assert doubt.id == str(raw['_id'])
        assert doubt.subject is Subject.DBMS

    def test_is_resolved_defaults_to_false(self):
        raw = _doubt_raw()
        del raw['is_resolved']
        assert decode_record(Doubt, raw).is_resolved is False

    def test_unknown_field_rejected(self):
        with pytest.raises(RecordDecodeError) as exc_info:
            decode_record(Doubt, _doubt_raw(upvotes=3), 'doubts')
        error = exc_info.value
        assert error.code == 'RECORD_DECODE_FAILED'
        assert error.details['collection'] == 'doubts'
        assert any('upvotes' in e for e in error.details['errors'])

    def test_missing_field_rejected(self):
        raw = _doubt_raw()
        del raw['author_id']
        with pytest.raises(RecordDecodeError):
            decode_record(Doubt, raw, 'doubts')

    def test_unknown_subject_rejected(self):
        with pytest.raises(RecordDecodeError):
            decode_record(Doubt, _doubt_raw(subject='Biology'))

    def test_resource(self):
        resource = decode_record(Resource, {
            'id': 'n1',
            'author_id': 'u1',
            'author_name': 'Asha Rao',
            'topic': 'Paging and segmentation',
            'subject': 'OS',
            'resource_url': 'https://youtu.be/xyz',
            'resource_type': 'youtube',
            'created_at': CREATED,
        })
        assert resource.resource_type is ResourceType.YOUTUBE
        assert resource.description is None

    def test_user_profile_keyed_by_uid(self):
        profile = decode_record(UserProfile, {
            'id': 'u1', 'uid': 'u1', 'name': 'Asha Rao', 'email': 'asha@example.com', 'upvote_score': 0,
        })
        assert profile.uid == 'u1'

    def test_user_profile_uid_from_key(self):
        profile = decode_record(UserProfile, {'_id': 'u9', 'name': 'Ravi', 'email': 'ravi@example.com'})
        assert profile.uid == 'u9'
        assert profile.upvote_score == 0

    def test_decode_records(self):
        answers = decode_records(Answer, [
            {'id': 'a1', 'doubt_id': 'd1', 'author_id': 'u2', 'author_name': 'Ravi', 'text': 'Yes', 'created_at': CREATED},
            {'id': 'a2', 'doubt_id': 'd1', 'author_id': 'u1', 'author_name': 'Asha', 'text': 'No', 'created_at': CREATED},
        ], 'answers')
        assert [a.id for a in answers] == ['a1', 'a2']
