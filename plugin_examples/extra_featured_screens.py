"""Example plugin: register the Featured Video panel on a custom post type

Demonstrates the `register(hooks)` entry point. Extends the screen list the
STN Video plugin registers its Featured Video meta box on, so hiding the meta
box also covers the `video` post type.
"""

EXTRA_SCREENS = ['video']


def add_screens(screens):
    out = list(screens)
    for screen in EXTRA_SCREENS:
        if screen not in out:
            out.append(screen)
    return out


def register(hooks):
    hooks.add_filter('stnvideo_featured_video_screens', add_screens)
