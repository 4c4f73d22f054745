from datetime import datetime, timezone

import pytest

from manifest_proxy.core.errors import InvalidRequest, ManifestError
from manifest_proxy.services.mpd_to_hls import (
    build_master_playlist,
    build_media_playlist,
    fill_template,
    parse_duration,
    parse_mpd,
)

VOD = """<?xml version="1.0" encoding="UTF-8"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static" mediaPresentationDuration="PT8S">
  <Period>
    <AdaptationSet contentType="video" mimeType="video/mp4">
      <SegmentTemplate media="$RepresentationID$/seg_$Number%05d$.m4s" initialization="$RepresentationID$/init.mp4" duration="4" startNumber="1"/>
      <Representation id="v1080" bandwidth="6000000" width="1920" height="1080" codecs="avc1.640028"/>
      <Representation id="v720" bandwidth="3000000" width="1280" height="720" codecs="avc1.64001f"/>
    </AdaptationSet>
    <AdaptationSet mimeType="audio/mp4" lang="en">
      <Representation id="a1" bandwidth="128000" codecs="mp4a.40.2">
        <SegmentTemplate media="audio/$Time$.m4s" timescale="1000">
          <SegmentTimeline>
            <S t="0" d="2000" r="2"/>
            <S d="3000"/>
          </SegmentTimeline>
        </SegmentTemplate>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""

SEGMENT_LIST = """<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static" mediaPresentationDuration="PT6S">
  <BaseURL>http://cdn.example.com/list/</BaseURL>
  <Period>
    <AdaptationSet mimeType="video/mp4">
      <Representation id="v" bandwidth="1000000">
        <SegmentList duration="3">
          <Initialization sourceURL="init.mp4"/>
          <SegmentURL media="one.m4s"/>
          <SegmentURL media="two.m4s"/>
        </SegmentList>
      </Representation>
    </AdaptationSet>
  </Period>
</MPD>
"""

LIVE = """<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="dynamic"
     availabilityStartTime="2024-01-01T00:00:00Z" timeShiftBufferDepth="PT20S">
  <Period start="PT0S">
    <AdaptationSet mimeType="video/mp4">
      <SegmentTemplate media="live_$Number$.m4s" duration="4"/>
      <Representation id="v" bandwidth="2000000"/>
    </AdaptationSet>
  </Period>
</MPD>
"""

MANIFEST_URL = "http://origin/vod/manifest.mpd"


def _uris(playlist: str):
    return [line for line in playlist.splitlines() if line and not line.startswith("#")]


@pytest.mark.parametrize("value,expected", [
    ("PT8S", 8),
    ("PT1H2M3.5S", 3723.5),
    ("P1DT1S", 86401),
    ("PT0S", 0),
    (None, None),
    ("bogus", None),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


def test_parse_representations():
    doc = parse_mpd(VOD, MANIFEST_URL)
    assert [r.id for r in doc.representations] == ["v1080", "v720", "a1"]
    assert [r.kind for r in doc.representations] == ["video", "video", "audio"]
    assert doc.duration == 8
    assert not doc.is_live
    assert doc.representation("a1").language == "en"


def test_master_playlist():
    doc = parse_mpd(VOD, MANIFEST_URL)
    master = build_master_playlist(doc, lambda rep_id: f"/variant/{rep_id}.m3u8")
    lines = master.splitlines()

    assert lines[0] == "#EXTM3U"
    assert (
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="audio",NAME="en",LANGUAGE="en",'
        'DEFAULT=YES,AUTOSELECT=YES,URI="/variant/a1.m3u8"'
    ) in lines
    # Variants sorted by bandwidth, audio bandwidth included
    assert lines.index(
        '#EXT-X-STREAM-INF:BANDWIDTH=3128000,RESOLUTION=1280x720,CODECS="avc1.64001f,mp4a.40.2",AUDIO="audio"'
    ) < lines.index(
        '#EXT-X-STREAM-INF:BANDWIDTH=6128000,RESOLUTION=1920x1080,CODECS="avc1.640028,mp4a.40.2",AUDIO="audio"'
    )
    assert _uris(master) == ["/variant/v720.m3u8", "/variant/v1080.m3u8"]


def test_media_playlist_from_fixed_duration_template():
    doc = parse_mpd(VOD, MANIFEST_URL)
    playlist = build_media_playlist(doc, "v720")
    lines = playlist.splitlines()

    assert "#EXT-X-VERSION:7" in lines
    assert "#EXT-X-TARGETDURATION:4" in lines
    assert "#EXT-X-MEDIA-SEQUENCE:1" in lines
    assert '#EXT-X-MAP:URI="http://origin/vod/v720/init.mp4"' in lines
    assert _uris(playlist) == [
        "http://origin/vod/v720/seg_00001.m4s",
        "http://origin/vod/v720/seg_00002.m4s",
    ]
    assert lines[-1] == "#EXT-X-ENDLIST"


def test_media_playlist_from_timeline():
    doc = parse_mpd(VOD, MANIFEST_URL)
    playlist = build_media_playlist(doc, "a1")

    assert _uris(playlist) == [
        "http://origin/vod/audio/0.m4s",
        "http://origin/vod/audio/2000.m4s",
        "http://origin/vod/audio/4000.m4s",
        "http://origin/vod/audio/6000.m4s",
    ]
    assert "#EXTINF:2.000," in playlist
    assert "#EXTINF:3.000," in playlist
    assert "#EXT-X-TARGETDURATION:3" in playlist
    assert "#EXT-X-MAP" not in playlist


def test_media_playlist_from_segment_list():
    doc = parse_mpd(SEGMENT_LIST, MANIFEST_URL)
    playlist = build_media_playlist(doc, "v")

    assert '#EXT-X-MAP:URI="http://cdn.example.com/list/init.mp4"' in playlist
    assert _uris(playlist) == ["http://cdn.example.com/list/one.m4s", "http://cdn.example.com/list/two.m4s"]


def test_live_window():
    doc = parse_mpd(LIVE, MANIFEST_URL)
    start = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
    playlist = build_media_playlist(doc, "v", now=start + 100)

    assert doc.is_live
    assert "#EXT-X-MEDIA-SEQUENCE:21" in playlist
    assert _uris(playlist) == [f"http://origin/vod/live_{n}.m4s" for n in range(21, 26)]
    assert "#EXT-X-ENDLIST" not in playlist


def test_unknown_representation():
    doc = parse_mpd(VOD, MANIFEST_URL)
    with pytest.raises(InvalidRequest):
        build_media_playlist(doc, "missing")


def test_undeterminable_segment_count():
    mpd = VOD.replace(' mediaPresentationDuration="PT8S"', "")
    doc = parse_mpd(mpd, MANIFEST_URL)
    with pytest.raises(ManifestError):
        build_media_playlist(doc, "v720")


def test_rejects_non_mpd_documents():
    with pytest.raises(ManifestError):
        parse_mpd("<html></html>", MANIFEST_URL)
    with pytest.raises(ManifestError):
        parse_mpd("#EXTM3U\n", MANIFEST_URL)


def test_fill_template():
    doc = parse_mpd(VOD, MANIFEST_URL)
    rep = doc.representation("v720")
    assert fill_template("$RepresentationID$-$Bandwidth$-$Number%03d$-$Time$-$$", rep, 7, 42) == "v720-3000000-007-42-$"


OFFSET_TIMELINE = """<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static" mediaPresentationDuration="PT20S">
  <Period>
    <AdaptationSet mimeType="video/mp4">
      <SegmentTemplate media="$Time$.m4s" timescale="90000" {offset}>
        <SegmentTimeline><S t="9000000" d="180000" r="-1"/></SegmentTimeline>
      </SegmentTemplate>
      <Representation id="v" bandwidth="1000"/>
    </AdaptationSet>
  </Period>
</MPD>
"""


@pytest.mark.parametrize("offset", ['presentationTimeOffset="9000000"', ""])
def test_open_ended_timeline_starting_late(offset):
    doc = parse_mpd(OFFSET_TIMELINE.format(offset=offset), MANIFEST_URL)
    uris = _uris(build_media_playlist(doc, "v"))

    assert len(uris) == 10
    assert uris[0] == "http://origin/vod/9000000.m4s"
    assert uris[-1] == "http://origin/vod/10620000.m4s"
