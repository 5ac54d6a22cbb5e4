import os, sys, json, tempfile, shutil

BASE = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE not in sys.path:
    sys.path.insert(0, BASE)

from stnvp_core import PostMetaStore, lookup_thumbnail  # type: ignore

SCHEMA = json.dumps({'@type': 'VideoObject', 'thumbnailUrl': ['//cdn.example.com/t.jpg']})


def _store(**overrides):
    meta = {'stnvm_status': 'ok', 'stnvm_keys': ['abc123'], 'hvy_video_schema_data': SCHEMA}
    meta.update(overrides)
    return PostMetaStore.from_mapping({'7': meta})


def test_processed_key_resolves_and_forces_https():
    assert lookup_thumbnail(_store(), 7, {'key': 'abc123'}) == 'https://cdn.example.com/t.jpg'


def test_missing_post_or_key_yields_nothing():
    assert lookup_thumbnail(_store(), None, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(_store(), 0, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(_store(), 8, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(_store(), 7, {}) == ''
    assert lookup_thumbnail(_store(), 7, {'key': '   '}) == ''
    assert lookup_thumbnail(None, 7, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(_store(), 7, None) == ''


def test_status_sentinel_gates_lookup():
    assert lookup_thumbnail(_store(stnvm_status='pending'), 7, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(_store(stnvm_status=''), 7, {'key': 'abc123'}) == ''


def test_key_must_be_processed():
    assert lookup_thumbnail(_store(stnvm_keys=['zzz']), 7, {'key': 'abc123'}) == ''
    # a scalar stored value counts as a one-item list
    assert lookup_thumbnail(_store(stnvm_keys='abc123'), 7, {'key': 'abc123'}) == 'https://cdn.example.com/t.jpg'


def test_malformed_schema_yields_nothing():
    for bad in ('', '{broken', json.dumps([1, 2]), json.dumps({'thumbnailUrl': []}),
                json.dumps({'thumbnailUrl': 'https://x/t.jpg'}), json.dumps({'thumbnailUrl': [None]}),
                json.dumps({'thumbnailUrl': ['']}), json.dumps({'name': 'no thumb'})):
        assert lookup_thumbnail(_store(hvy_video_schema_data=bad), 7, {'key': 'abc123'}) == '', bad
    assert lookup_thumbnail(_store(hvy_video_schema_data={'thumbnailUrl': ['x']}), 7, {'key': 'abc123'}) == ''


def test_absolute_thumbnail_kept_and_first_entry_wins():
    schema = json.dumps({'thumbnailUrl': ['https://a.example.com/1.jpg', 'https://a.example.com/2.jpg']})
    assert lookup_thumbnail(_store(hvy_video_schema_data=schema), 7, {'key': 'abc123'}) == 'https://a.example.com/1.jpg'


def test_custom_schema_meta_key():
    store = _store(hvy_video_schema_data='', stn_video_schema=SCHEMA)
    assert lookup_thumbnail(store, 7, {'key': 'abc123'}) == ''
    assert lookup_thumbnail(store, 7, {'key': 'abc123'}, schema_meta_key='stn_video_schema') == 'https://cdn.example.com/t.jpg'


def test_raw_attribute_string():
    assert lookup_thumbnail(_store(), 7, "key='abc123'") == 'https://cdn.example.com/t.jpg'


def test_meta_file_is_read_lazily():
    tmp = tempfile.mkdtemp(prefix='stnvp_meta_')
    try:
        path = os.path.join(tmp, 'meta.json')
        store = PostMetaStore(path)
        assert lookup_thumbnail(store, 7, {'key': 'abc123'}) == ''
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'7': {'stnvm_status': 'ok', 'stnvm_keys': ['abc123'], 'hvy_video_schema_data': SCHEMA}}, f)
        assert lookup_thumbnail(store, 7, {'key': 'abc123'}) == 'https://cdn.example.com/t.jpg'
        assert store.get_post_meta(7, 'missing') == ''
    finally:
        shutil.rmtree(tmp, ignore_errors=True)
