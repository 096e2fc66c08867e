# RoomOS Sonos Control
# SPDX-License-Identifier: GPL-3.0-or-later

"""
UI Extension panel builders.

Every page is built as an ElementTree element so names coming from Sonos
(group and playlist names, track titles) are escaped for free.  Widget ids
follow ``<panel_id>-<command>[-<option>]``; the controller splits them back
apart when a widget action arrives.

Pages:
  setup          — sign-in buttons for the device screen and/or a Navigator
  controls       — now playing, transport, volume, navigation
  openGroups     — "Locations": choose a player group
  openPlaylists  — choose a Sonos playlist
  error          — message + retry
"""

from xml.etree import ElementTree

SETUP = "setup"
CONTROLS = "controls"
GROUPS = "openGroups"
PLAYLISTS = "openPlaylists"
ERROR = "error"

SIGN_IN_TARGETS = {"OSD": "Device", "Controller": "Navigator"}


def identify_state(selected=None, *, signed_in, households, groups, group_id):
    """Pick the page to show.  Returns (state, error message or None)."""
    if selected:
        return selected, None
    if not signed_in:
        return SETUP, None
    if not households:
        return ERROR, "No Households Discovered"
    if not groups:
        return ERROR, "No Groups Discovered"
    if not group_id:
        return GROUPS, None
    return CONTROLS, None


# ── element helpers ──

def _page(name):
    page = ElementTree.Element("Page")
    ElementTree.SubElement(page, "Name").text = name
    return page


def _row(page):
    return ElementTree.SubElement(page, "Row")


def _widget(row, widget_id, widget_type, options, name=None):
    widget = ElementTree.SubElement(row, "Widget")
    ElementTree.SubElement(widget, "WidgetId").text = widget_id
    if name is not None:
        ElementTree.SubElement(widget, "Name").text = name
    ElementTree.SubElement(widget, "Type").text = widget_type
    ElementTree.SubElement(widget, "Options").text = options
    return widget


def _text(row, widget_id, name, size, font="normal", align="left"):
    return _widget(row, widget_id, "Text", f"size={size};fontSize={font};align={align}", name)


def _back_row(page, panel_id, spacer_id):
    row = _row(page)
    _widget(row, f"{panel_id}-controls", "Button", "size=1", "Back")
    _widget(row, f"{panel_id}-{spacer_id}", "Spacer", "size=3")


def _finish(page, page_id):
    ElementTree.SubElement(page, "Options").text = "hideRowNames=1"
    if page_id:
        ElementTree.SubElement(page, "PageId").text = page_id
    return page


# ── pages ──

def setup_page(panel_id, targets):
    """First time setup.  *targets* is a subset of ["OSD", "Controller"]."""
    page = _page("Sonos")
    _text(_row(page), f"{panel_id}-text", "First time setup", 3, align="center")

    if targets:
        for target in targets:
            screen = SIGN_IN_TARGETS.get(target, target)
            _widget(_row(page), f"{panel_id}-setup-{target}", "Button", "size=4",
                    f"Sign in with Sonos [{screen}]")
    else:
        _text(_row(page), f"{panel_id}-text",
              "This Device doesn't have an interface which can be used "
              "to sign into your Sonos account 🙁", 4, align="center")

    return _finish(page, f"{panel_id}-setup")


def controls_page(panel_id, title=None, artist=None, location=None, playlist=None):
    page = _page(title or " ")

    _text(_row(page), f"{panel_id}-artistText", artist or "", 4, font="small", align="center")

    row = _row(page)
    _widget(row, f"{panel_id}-PreviousTrack", "Button", "size=1;icon=fast_bw")
    _widget(row, f"{panel_id}-playPause", "Button", "size=1;icon=play_pause")
    _widget(row, f"{panel_id}-NextTrack", "Button", "size=1;icon=fast_fw")

    row = _row(page)
    _widget(row, f"{panel_id}-toggleMute", "Button", "size=1;icon=volume_muted")
    _widget(row, f"{panel_id}-volume", "Slider", "size=3")

    row = _row(page)
    _widget(row, f"{panel_id}-openPlaylists", "Button", "size=2", "Playlists")
    _widget(row, f"{panel_id}-openGroups", "Button", "size=2", "Locations")

    row = _row(page)
    _text(row, f"{panel_id}-playlistText", playlist or "", 2, font="small", align="left")
    _text(row, f"{panel_id}-locationText", location or "No location selected", 2,
          font="small", align="right")

    return _finish(page, f"{panel_id}-controls")


def groups_page(panel_id, groups, show_back=False):
    """*groups* as returned by filter_groups(): id, name, available."""
    page = _page("Locations")
    _text(_row(page), f"{panel_id}-locationText", "Press ⊕ to choose a location", 4, font="small")

    for group in groups:
        row = _row(page)
        _text(row, f"{panel_id}-groupText-{group['id']}", group["name"], 3)
        if group["available"]:
            _widget(row, f"{panel_id}-selectGroup-{group['id']}", "Button", "size=1;icon=plus")
        else:
            _text(row, f"{panel_id}-restrictedText-{group['id']}", "Restricted", 1,
                  font="small", align="center")

    if show_back:
        _back_row(page, panel_id, "locationSpacer")

    return _finish(page, f"{panel_id}-locations")


def playlists_page(panel_id, playlists):
    page = _page("Playlists")
    _text(_row(page), f"{panel_id}-playlist-choosetext", "Press play to choose a playlist", 4, font="small")

    for playlist in playlists:
        row = _row(page)
        _text(row, f"{panel_id}-playlist-{playlist['id']}-text", playlist.get("name", ""), 3)
        _widget(row, f"{panel_id}-selectPlaylist-{playlist['id']}", "Button", "size=1;icon=play")

    _back_row(page, panel_id, "playlistSpacer")
    return _finish(page, f"{panel_id}-playlists")


def error_page(panel_id, message):
    page = _page("Sonos")
    _text(_row(page), f"{panel_id}-errorText", message, 4, font="small")
    row = _row(page)
    _widget(row, f"{panel_id}-retry", "Button", "size=1", "Retry")
    _widget(row, f"{panel_id}-spacer", "Spacer", "size=3")
    return _finish(page, f"{panel_id}-error")


def build_panel(page, order=None) -> str:
    """Wrap a page in the Extensions/Panel envelope, keeping the panel order."""
    extensions = ElementTree.Element("Extensions")
    panel = ElementTree.SubElement(extensions, "Panel")
    if order is not None:
        ElementTree.SubElement(panel, "Order").text = str(order)
    ElementTree.SubElement(panel, "Origin").text = "local"
    ElementTree.SubElement(panel, "Location").text = "ControlPanel"
    ElementTree.SubElement(panel, "Icon").text = "Media"
    ElementTree.SubElement(panel, "Name").text = "Sonos"
    ElementTree.SubElement(panel, "ActivityType").text = "Custom"
    if page is not None:
        panel.append(page)
    return ElementTree.tostring(extensions, encoding="unicode")
