"""
Manifest rewriting.

HLS playlists have every media reference swapped for a registry-backed
``/segment/<id>.ts`` path. DASH manifests have their ``BaseURL`` bodies and
URL attributes (``media``, ``initialization``, ``index``, ``sourceURL``)
pointed at ``/segment?u=<url>``.
"""
import copy
import logging
import re
from typing import Optional, Union
from urllib.parse import quote, urljoin, urlparse

from lxml import etree

from manifest_proxy.core.errors import ManifestError
from manifest_proxy.services.segment_registry import SegmentRegistry

logger = logging.getLogger(__name__)

HLS = "hls"
DASH = "dash"

MANIFEST_TYPES = {
    HLS: "application/vnd.apple.mpegurl",
    DASH: "application/dash+xml",
}

# Tags whose URI attribute references a fetchable resource
URI_TAGS = ("#EXT-X-KEY:", "#EXT-X-MAP:", "#EXT-X-MEDIA:")
URI_PATTERN = re.compile(r'URI="([^"]+)"')

# $Number$, $Time%05d$, ... must survive URL quoting so players can substitute them
TEMPLATE_PATTERN = re.compile(r"(\$[^$/]*\$)")

DASH_URL_ATTRIBUTES = ("media", "initialization", "index", "sourceURL")

# Elements that may carry or inherit a SegmentTemplate
TEMPLATE_SCOPES = ("Period", "AdaptationSet", "Representation")


def detect_kind(body: bytes, content_type: str = "", url: str = "") -> Optional[str]:
    """Guess whether a fetched body is an HLS or a DASH manifest."""
    content_type = (content_type or "").lower()
    if "mpegurl" in content_type:
        return HLS
    if "dash+xml" in content_type:
        return DASH

    path = urlparse(url).path.lower()
    if path.endswith((".m3u8", ".m3u")):
        return HLS
    if path.endswith(".mpd"):
        return DASH

    head = body[:1024].lstrip()
    if head.startswith(b"\xef\xbb\xbf"):
        head = head[3:]
    if head.startswith(b"#EXTM3U"):
        return HLS
    if b"<MPD" in head:
        return DASH
    return None


def _is_http(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def _local_name(element) -> str:
    return etree.QName(element).localname


def _find_child(element, name: str):
    for child in element:
        if isinstance(child.tag, str) and _local_name(child) == name:
            return child
    return None


def _merged_template(inherited, own):
    """Combine a SegmentTemplate with the one it inherits; ``own`` wins attribute by attribute."""
    if own is None:
        return inherited
    merged = copy.deepcopy(own)
    if inherited is not None:
        for name, value in inherited.attrib.items():
            if name not in merged.attrib:
                merged.set(name, value)
        timeline = _find_child(inherited, "SegmentTimeline")
        if timeline is not None and _find_child(merged, "SegmentTimeline") is None:
            merged.append(copy.deepcopy(timeline))
    return merged


def _materialize_template(element, inherited):
    """
    Give ``element`` its own copy of an inherited SegmentTemplate.

    Template URLs resolve against the BaseURL of the Representation that uses
    them, so an element with its own BaseURL cannot share a template that was
    rewritten against its parent's base.
    """
    own = _find_child(element, "SegmentTemplate")
    if own is not None:
        merged = _merged_template(inherited, own)
        for name, value in merged.attrib.items():
            own.set(name, value)
        if _find_child(own, "SegmentTimeline") is None:
            timeline = _find_child(merged, "SegmentTimeline")
            if timeline is not None:
                own.append(timeline)
        return

    own = copy.deepcopy(inherited)
    own.tail = None
    base = None
    for child in element:
        if isinstance(child.tag, str) and _local_name(child) == "BaseURL":
            base = child
    if base is not None:
        base.addnext(own)
    else:
        element.insert(0, own)


class ManifestRewriter:
    def __init__(
        self,
        registry: SegmentRegistry,
        public_base_url: str = "",
        follow_variants: bool = False,
        rewrite_tag_uris: bool = False,
    ):
        self.registry = registry
        self.public_base_url = public_base_url.rstrip("/")
        self.follow_variants = follow_variants
        self.rewrite_tag_uris = rewrite_tag_uris

    def local_url(self, path: str) -> str:
        return f"{self.public_base_url}{path}"

    # --- HLS ---

    def _hls_reference(self, absolute_url: str) -> str:
        segment_id = self.registry.resolve_or_create(absolute_url)
        if self.follow_variants and urlparse(absolute_url).path.endswith(".m3u8"):
            return self.local_url(f"/playlist/{segment_id}.m3u8")
        return self.local_url(f"/segment/{segment_id}.ts")

    def _rewrite_tag(self, line: str, base_url: str) -> str:
        def replace_uri(match: re.Match) -> str:
            absolute_url = urljoin(base_url, match.group(1))
            if not _is_http(absolute_url):
                return match.group(0)
            return f'URI="{self._hls_reference(absolute_url)}"'

        return URI_PATTERN.sub(replace_uri, line)

    def rewrite_hls(self, content: str, base_url: str, rewrite_tag_uris: Optional[bool] = None) -> str:
        """
        Rewrite an HLS playlist.

        Non-blank lines that do not start with ``#`` are resolved against
        ``base_url``, registered, and replaced by a local path. Tag lines are
        kept verbatim unless tag URI rewriting is enabled.
        """
        if rewrite_tag_uris is None:
            rewrite_tag_uris = self.rewrite_tag_uris

        rewritten = []
        registered = 0
        for raw_line in content.splitlines(keepends=True):
            line = raw_line.rstrip("\r\n")
            ending = raw_line[len(line):]
            stripped = line.strip()

            if not stripped:
                rewritten.append(raw_line)
            elif stripped.startswith("#"):
                if rewrite_tag_uris and stripped.startswith(URI_TAGS):
                    rewritten.append(self._rewrite_tag(line, base_url) + ending)
                else:
                    rewritten.append(raw_line)
            else:
                rewritten.append(self._hls_reference(urljoin(base_url, stripped)) + ending)
                registered += 1

        logger.debug(f"HLS rewrite of {base_url}: {registered} references registered")
        return "".join(rewritten)

    # --- DASH ---

    def dash_segment_url(self, absolute_url: str) -> str:
        parts = TEMPLATE_PATTERN.split(absolute_url)
        encoded = "".join(
            part if TEMPLATE_PATTERN.fullmatch(part) else quote(part, safe=":/")
            for part in parts
        )
        return self.local_url(f"/segment?u={encoded}")

    def _rewrite_dash_element(self, element, base_url: str, inherited_template=None):
        if _local_name(element) == "BaseURL":
            text = (element.text or "").strip()
            element.text = self.dash_segment_url(urljoin(base_url, text))
            return

        own_base = base_url
        has_base = False
        for child in element:
            if isinstance(child.tag, str) and _local_name(child) == "BaseURL" and (child.text or "").strip():
                own_base = urljoin(base_url, child.text.strip())
                has_base = True
                break

        # Snapshot before rewriting so descendants inherit the upstream-relative values
        template = None
        if _local_name(element) in TEMPLATE_SCOPES:
            template = _merged_template(inherited_template, _find_child(element, "SegmentTemplate"))
            if has_base and inherited_template is not None:
                _materialize_template(element, inherited_template)

        for attribute in DASH_URL_ATTRIBUTES:
            value = element.get(attribute)
            if value:
                element.set(attribute, self.dash_segment_url(urljoin(own_base, value)))

        for child in element:
            # Skip comments and processing instructions
            if not isinstance(child.tag, str):
                continue
            child_base = base_url if _local_name(child) == "BaseURL" else own_base
            self._rewrite_dash_element(child, child_base, template)

    def rewrite_dash(self, content: Union[str, bytes], base_url: str) -> bytes:
        """Rewrite a DASH manifest, resolving each reference through the BaseURL hierarchy."""
        if isinstance(content, str):
            content = content.encode("utf-8")

        parser = etree.XMLParser(resolve_entities=False, no_network=True)
        try:
            root = etree.fromstring(content, parser=parser)
        except etree.XMLSyntaxError as e:
            raise ManifestError(f"Malformed DASH manifest from {base_url}: {e}")

        self._rewrite_dash_element(root, base_url)
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8")

    def rewrite(self, kind: str, body: bytes, base_url: str) -> Union[str, bytes]:
        if kind == HLS:
            return self.rewrite_hls(body.decode("utf-8", errors="replace"), base_url)
        if kind == DASH:
            return self.rewrite_dash(body, base_url)
        raise ManifestError(f"Unsupported manifest type: {kind}")
