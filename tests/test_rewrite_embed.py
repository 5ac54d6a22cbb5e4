import os, sys, json

BASE = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE not in sys.path:
    sys.path.insert(0, BASE)

from stnvp_core import PostMetaStore, RenderContext, Settings, rewrite_embed  # type: ignore

EMBED = ('<div class="s2nPlayer k-abc123" data-type="float"></div>'
         '<script type="text/javascript" src="//embed.sendtonews.com/player3/embedcode.js?fk=abc123&cid=1" data-type="s2nScript"></script>')
SIMPLE = '<div class="s2nPlayer k-abc123"></div><script src="//embed.sendtonews.com/x.js"></script>'
ON = Settings(load_delay_ms=1500)


def _meta(thumb='//cdn.example.com/t.jpg', status='ok', keys=('abc123',)):
    return PostMetaStore.from_mapping({'42': {
        'stnvm_status': status,
        'stnvm_keys': list(keys),
        'hvy_video_schema_data': json.dumps({'thumbnailUrl': [thumb, '//cdn.example.com/other.jpg']}),
    }})


def test_zero_delay_is_identity():
    assert rewrite_embed(SIMPLE, 'sendtonews', {'key': 'abc123'}, RenderContext(), Settings()) == SIMPLE


def test_other_tag_or_admin_is_identity():
    assert rewrite_embed(SIMPLE, 'gallery', {}, RenderContext(), ON) == SIMPLE
    assert rewrite_embed(SIMPLE, 'sendtonews', {}, RenderContext(is_admin=True), ON) == SIMPLE


def test_output_without_script_is_identity():
    html = '<div class="s2nPlayer"></div><script>var inline = 1;</script>'
    assert rewrite_embed(html, 'sendtonews', {}, RenderContext(), ON) == html
    assert rewrite_embed('', 'sendtonews', {}, RenderContext(), ON) == ''


def test_deferred_loader_without_thumbnail():
    out = rewrite_embed(SIMPLE, 'sendtonews', {'key': 'abc123'}, RenderContext(), ON)
    assert out.startswith('<style>')
    assert 'aspect-ratio: 16 / 9;' in out
    assert 'rgba( 0, 0, 0, 0.05 )' in out
    assert '.s2nPlayer.k-' not in out
    assert 'script.src = "https://embed.sendtonews.com/x.js";' in out
    assert 'setTimeout( loadSTNVideo, 1500 );' in out
    assert 'script.async = true;' in out
    assert 'script.setAttribute( "data-type", "s2nScript" );' in out
    assert 'src="//embed.sendtonews.com/x.js"' not in out
    # markup around the script survives
    assert '<div class="s2nPlayer k-abc123"></div>' in out


def test_thumbnail_rule_scoped_to_key():
    ctx = RenderContext(post_id=42, meta=_meta())
    out = rewrite_embed(SIMPLE, 'sendtonews', {'key': 'abc123'}, ctx, ON)
    assert '.s2nPlayer.k-abc123 {' in out
    assert '--background-image: url( "https://cdn.example.com/t.jpg" );' in out
    assert 'other.jpg' not in out


def test_thumbnail_rule_skipped_for_non_https_thumbnail():
    ctx = RenderContext(post_id=42, meta=_meta(thumb='javascript:alert(1)'))
    out = rewrite_embed(SIMPLE, 'sendtonews', {'key': 'abc123'}, ctx, ON)
    assert '.s2nPlayer.k-' not in out
    assert 'alert(1)' not in out


def test_raw_attribute_string_is_parsed():
    ctx = RenderContext(post_id=42, meta=_meta())
    out = rewrite_embed(SIMPLE, 'sendtonews', 'key="abc123" type="float"', ctx, ON)
    assert '.s2nPlayer.k-abc123 {' in out


def test_query_string_is_js_escaped():
    out = rewrite_embed(EMBED, 'sendtonews', {'key': 'abc123'}, RenderContext(), ON)
    assert 'script.src = "https://embed.sendtonews.com/player3/embedcode.js?fk=abc123\\u0026cid=1";' in out
    assert out.count('<script') == 1


def test_non_https_script_is_dropped_not_loaded():
    for src in ('http://embed.sendtonews.com/x.js', 'javascript:alert(1)', 'data:text/javascript,alert(1)', 'x.js'):
        html = f'<div class="s2nPlayer k-abc123"></div><script src="{src}"></script>'
        out = rewrite_embed(html, 'sendtonews', {'key': 'abc123'}, RenderContext(), ON)
        assert src not in out
        assert '<script' not in out
        assert 'loadSTNVideo' not in out
        assert out.startswith('<style>')
        assert out.endswith('<div class="s2nPlayer k-abc123"></div>')
        assert rewrite_embed(out, 'sendtonews', {'key': 'abc123'}, RenderContext(), ON) == out


def test_only_first_script_is_replaced():
    html = SIMPLE + '<script src="https://other.example.com/y.js"></script>'
    out = rewrite_embed(html, 'sendtonews', {}, RenderContext(), ON)
    assert 'script.src = "https://embed.sendtonews.com/x.js";' in out
    assert '<script src="https://other.example.com/y.js"></script>' in out


def test_second_pass_adds_no_second_loader():
    ctx = RenderContext(post_id=42, meta=_meta())
    once = rewrite_embed(SIMPLE, 'sendtonews', {'key': 'abc123'}, ctx, ON)
    twice = rewrite_embed(once, 'sendtonews', {'key': 'abc123'}, ctx, ON)
    assert twice == once
    assert twice.count('function loadSTNVideo()') == 1
    assert twice.count('<style>') == 1


def test_key_is_sanitized_into_class():
    ctx = RenderContext(post_id=42, meta=PostMetaStore.from_mapping({'42': {
        'stnvm_status': 'ok',
        'stnvm_keys': ['ab"c'],
        'hvy_video_schema_data': json.dumps({'thumbnailUrl': ['https://cdn.example.com/t.jpg']}),
    }}))
    out = rewrite_embed(SIMPLE, 'sendtonews', {'key': 'ab"c<1>'}, ctx, ON)
    assert '.s2nPlayer.k-abc {' in out
    assert 'ab"c' not in out


def test_attrs_are_not_mutated():
    attrs = {'key': 'abc123'}
    rewrite_embed(SIMPLE, 'sendtonews', attrs, RenderContext(post_id=42, meta=_meta()), ON)
    assert attrs == {'key': 'abc123'}
