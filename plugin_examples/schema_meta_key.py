"""Example plugin: read video schema from a different post meta key

Sites that store the STN Video Meta schema JSON under their own key can point
the thumbnail lookup at it through the `stnvm_schema_meta_key` filter.
"""

SCHEMA_META_KEY = 'stn_video_schema'


def register(hooks):
    hooks.add_filter('stnvm_schema_meta_key', lambda key: SCHEMA_META_KEY)
