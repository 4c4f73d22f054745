"""
MPEG-DASH to HLS conversion.

A parsed MPD is turned into a master playlist (one variant per video
representation, one rendition per audio representation) and, per
representation, a media playlist listing absolute segment URLs.
Only the first Period is converted.
"""
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin

from lxml import etree

from manifest_proxy.core.errors import InvalidRequest, ManifestError

ISO_DURATION = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)
TEMPLATE_IDENTIFIER = re.compile(r"\$(RepresentationID|Number|Bandwidth|Time)(?:%0(\d+)d)?\$")

# Window size used for live MPDs without timeShiftBufferDepth
DEFAULT_LIVE_WINDOW = 30.0


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parse an ISO 8601 duration such as ``PT1H2M3.5S`` into seconds."""
    if not value:
        return None
    match = ISO_DURATION.match(value.strip())
    if not match:
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


def _parse_datetime(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


@dataclass
class SegmentTemplate:
    media: Optional[str] = None
    initialization: Optional[str] = None
    start_number: int = 1
    timescale: int = 1
    duration: Optional[int] = None
    presentation_time_offset: Optional[int] = None
    # (t, d, r) triples from SegmentTimeline
    timeline: List[Tuple[Optional[int], int, int]] = field(default_factory=list)


@dataclass
class SegmentList:
    initialization: Optional[str] = None
    urls: List[str] = field(default_factory=list)
    timescale: int = 1
    duration: Optional[int] = None


@dataclass
class Representation:
    id: str
    bandwidth: int
    kind: str
    base_url: str
    codecs: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    language: Optional[str] = None
    template: Optional[SegmentTemplate] = None
    segment_list: Optional[SegmentList] = None


@dataclass
class MpdDocument:
    url: str
    type: str
    duration: Optional[float]
    availability_start: Optional[float]
    period_start: float
    time_shift_buffer: Optional[float]
    representations: List[Representation]

    @property
    def is_live(self) -> bool:
        return self.type == "dynamic"

    def representation(self, representation_id: str) -> Representation:
        for rep in self.representations:
            if rep.id == representation_id:
                return rep
        raise InvalidRequest(f"Unknown representation: {representation_id}")


def _children(element, name: str) -> list:
    return [c for c in element if isinstance(c.tag, str) and etree.QName(c).localname == name]


def _child(element, name: str):
    found = _children(element, name)
    return found[0] if found else None


def _base_url(element, parent_base: str) -> str:
    base = _child(element, "BaseURL")
    if base is not None and (base.text or "").strip():
        return urljoin(parent_base, base.text.strip())
    return parent_base


def _int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    return int(float(value))


def _classify(mime_type: str, content_type: str) -> str:
    for candidate in (content_type, mime_type.split("/")[0] if mime_type else ""):
        if candidate in ("video", "audio", "text"):
            return candidate
    return "video"


def _merge_template(elements: list) -> Optional[SegmentTemplate]:
    """Merge SegmentTemplate elements from Period, AdaptationSet and Representation, innermost wins."""
    attributes: Dict[str, str] = {}
    timeline = None
    for element in elements:
        if element is None:
            continue
        attributes.update(element.attrib)
        node = _child(element, "SegmentTimeline")
        if node is not None:
            timeline = [
                (_int(s.get("t")), _int(s.get("d")), _int(s.get("r"), 0))
                for s in _children(node, "S")
            ]
    if not attributes and timeline is None:
        return None
    return SegmentTemplate(
        media=attributes.get("media"),
        initialization=attributes.get("initialization"),
        start_number=_int(attributes.get("startNumber"), 1),
        timescale=_int(attributes.get("timescale"), 1),
        duration=_int(attributes.get("duration")),
        presentation_time_offset=_int(attributes.get("presentationTimeOffset")),
        timeline=timeline or [],
    )


def _segment_list(element, base_url: str) -> Optional[SegmentList]:
    if element is None:
        return None
    init = _child(element, "Initialization")
    return SegmentList(
        initialization=urljoin(base_url, init.get("sourceURL")) if init is not None and init.get("sourceURL") else None,
        urls=[urljoin(base_url, s.get("media", "")) for s in _children(element, "SegmentURL")],
        timescale=_int(element.get("timescale"), 1),
        duration=_int(element.get("duration")),
    )


def parse_mpd(body: Union[str, bytes], manifest_url: str) -> MpdDocument:
    if isinstance(body, str):
        body = body.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(body, parser=parser)
    except etree.XMLSyntaxError as e:
        raise ManifestError(f"Malformed MPD: {e}")
    if etree.QName(root).localname != "MPD":
        raise ManifestError("Document root is not an MPD element")

    period = _child(root, "Period")
    if period is None:
        raise ManifestError("MPD has no Period")

    mpd_base = _base_url(root, manifest_url)
    period_base = _base_url(period, mpd_base)
    period_duration = parse_duration(period.get("duration"))

    representations = []
    for adaptation in _children(period, "AdaptationSet"):
        set_base = _base_url(adaptation, period_base)
        for rep in _children(adaptation, "Representation"):
            rep_base = _base_url(rep, set_base)
            mime_type = rep.get("mimeType") or adaptation.get("mimeType") or ""
            segment_list = _child(rep, "SegmentList")
            if segment_list is None:
                segment_list = _child(adaptation, "SegmentList")
            representations.append(Representation(
                id=rep.get("id", ""),
                bandwidth=_int(rep.get("bandwidth"), 0),
                kind=_classify(mime_type, adaptation.get("contentType", "")),
                base_url=rep_base,
                codecs=rep.get("codecs") or adaptation.get("codecs"),
                width=_int(rep.get("width") or adaptation.get("width")),
                height=_int(rep.get("height") or adaptation.get("height")),
                language=adaptation.get("lang"),
                template=_merge_template([
                    _child(period, "SegmentTemplate"),
                    _child(adaptation, "SegmentTemplate"),
                    _child(rep, "SegmentTemplate"),
                ]),
                segment_list=_segment_list(segment_list, rep_base),
            ))

    return MpdDocument(
        url=manifest_url,
        type=root.get("type", "static"),
        duration=period_duration or parse_duration(root.get("mediaPresentationDuration")),
        availability_start=_parse_datetime(root.get("availabilityStartTime")),
        period_start=parse_duration(period.get("start")) or 0.0,
        time_shift_buffer=parse_duration(root.get("timeShiftBufferDepth")),
        representations=representations,
    )


def fill_template(template: str, representation: Representation, number: int = 0, time_value: int = 0) -> str:
    values = {
        "RepresentationID": representation.id,
        "Number": number,
        "Bandwidth": representation.bandwidth,
        "Time": time_value,
    }

    def replace(match: re.Match) -> str:
        value = values[match.group(1)]
        if match.group(2) and match.group(1) != "RepresentationID":
            return f"{int(value):0{int(match.group(2))}d}"
        return str(value)

    return TEMPLATE_IDENTIFIER.sub(replace, template).replace("$$", "$")


def _timeline_segments(template: SegmentTemplate, period_duration: Optional[float]) -> List[Tuple[int, int]]:
    segments = []
    # Timeline times are absolute; the period spans from the presentation time offset,
    # or from the first S@t when no offset is given
    first_t = template.timeline[0][0] if template.timeline else None
    origin = template.presentation_time_offset
    if origin is None:
        origin = first_t or 0
    current = first_t if first_t is not None else origin
    end = origin + period_duration * template.timescale if period_duration else None
    for index, (t, d, r) in enumerate(template.timeline):
        if t is not None:
            current = t
        if r < 0:
            # Repeat until the next S@t, or the end of the period
            following = template.timeline[index + 1][0] if index + 1 < len(template.timeline) else None
            limit = following if following is not None else end
            r = math.ceil((limit - current) / d) - 1 if limit is not None else 0
        for _ in range(r + 1):
            segments.append((current, d))
            current += d
    return segments


def _template_segments(doc: MpdDocument, rep: Representation, now: float) -> Tuple[int, List[Tuple[str, float]]]:
    template = rep.template
    if not template.media:
        raise ManifestError(f"Representation {rep.id} has no media template")

    if template.timeline:
        timeline = _timeline_segments(template, doc.duration)
        return template.start_number, [
            (
                urljoin(rep.base_url, fill_template(template.media, rep, template.start_number + i, t)),
                d / template.timescale,
            )
            for i, (t, d) in enumerate(timeline)
        ]

    if not template.duration:
        raise ManifestError(f"Representation {rep.id} has neither SegmentTimeline nor duration")
    segment_duration = template.duration / template.timescale

    if doc.is_live and doc.availability_start is not None:
        elapsed = now - doc.availability_start - doc.period_start
        last = template.start_number + int(elapsed // segment_duration) - 1
        window = doc.time_shift_buffer or DEFAULT_LIVE_WINDOW
        first = max(template.start_number, last - int(window // segment_duration) + 1)
    elif doc.duration:
        first = template.start_number
        last = first + math.ceil(doc.duration / segment_duration) - 1
    else:
        raise ManifestError(f"Cannot determine segment count for representation {rep.id}")

    return first, [
        (
            urljoin(rep.base_url, fill_template(
                template.media,
                rep,
                number,
                (template.presentation_time_offset or 0) + (number - template.start_number) * template.duration,
            )),
            segment_duration,
        )
        for number in range(first, last + 1)
    ]


def _list_segments(doc: MpdDocument, rep: Representation) -> Tuple[int, List[Tuple[str, float]]]:
    segment_list = rep.segment_list
    if segment_list.duration:
        segment_duration = segment_list.duration / segment_list.timescale
    elif doc.duration and segment_list.urls:
        segment_duration = doc.duration / len(segment_list.urls)
    else:
        raise ManifestError(f"Cannot determine segment duration for representation {rep.id}")
    return 1, [(url, segment_duration) for url in segment_list.urls]


def _format_attributes(attributes: List[Tuple[str, object]]) -> str:
    return ",".join(f"{k}={v}" for k, v in attributes if v is not None)


def build_master_playlist(doc: MpdDocument, variant_uri: Callable[[str], str]) -> str:
    videos = [r for r in doc.representations if r.kind == "video"]
    audios = [r for r in doc.representations if r.kind == "audio"]

    lines = ["#EXTM3U", "#EXT-X-VERSION:7", "#EXT-X-INDEPENDENT-SEGMENTS"]

    if videos:
        for index, rep in enumerate(audios):
            lines.append("#EXT-X-MEDIA:" + _format_attributes([
                ("TYPE", "AUDIO"),
                ("GROUP-ID", '"audio"'),
                ("NAME", f'"{rep.language or rep.id}"'),
                ("LANGUAGE", f'"{rep.language}"' if rep.language else None),
                ("DEFAULT", "YES" if index == 0 else "NO"),
                ("AUTOSELECT", "YES"),
                ("URI", f'"{variant_uri(rep.id)}"'),
            ]))
        audio_codecs = audios[0].codecs if audios else None
        variants = [(rep, audios[0].bandwidth if audios else 0, audio_codecs) for rep in videos]
    else:
        variants = [(rep, 0, None) for rep in audios]

    for rep, extra_bandwidth, audio_codecs in sorted(variants, key=lambda v: v[0].bandwidth):
        codecs = ",".join(c for c in (rep.codecs, audio_codecs) if c)
        lines.append("#EXT-X-STREAM-INF:" + _format_attributes([
            ("BANDWIDTH", rep.bandwidth + extra_bandwidth),
            ("RESOLUTION", f"{rep.width}x{rep.height}" if rep.width and rep.height else None),
            ("CODECS", f'"{codecs}"' if codecs else None),
            ("AUDIO", '"audio"' if videos and audios else None),
        ]))
        lines.append(variant_uri(rep.id))

    return "\n".join(lines) + "\n"


def build_media_playlist(doc: MpdDocument, representation_id: str, now: Optional[float] = None) -> str:
    rep = doc.representation(representation_id)
    now = time.time() if now is None else now

    initialization = None
    if rep.template is not None and (rep.template.media or rep.template.timeline):
        first, segments = _template_segments(doc, rep, now)
        if rep.template.initialization:
            initialization = urljoin(rep.base_url, fill_template(rep.template.initialization, rep))
    elif rep.segment_list is not None:
        first, segments = _list_segments(doc, rep)
        initialization = rep.segment_list.initialization
    elif doc.duration:
        # Single-file representation addressed by its BaseURL only
        first, segments = 1, [(rep.base_url, doc.duration)]
    else:
        raise ManifestError(f"Representation {rep.id} has no usable segment addressing")

    target = max((math.ceil(d) for _, d in segments), default=1)
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:7" if initialization else "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{target}",
        f"#EXT-X-MEDIA-SEQUENCE:{first}",
    ]
    if not doc.is_live:
        lines.append("#EXT-X-PLAYLIST-TYPE:VOD")
    if initialization:
        lines.append(f'#EXT-X-MAP:URI="{initialization}"')
    for url, duration in segments:
        lines.append(f"#EXTINF:{duration:.3f},")
        lines.append(url)
    if not doc.is_live:
        lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"
