"""
Flickr REST adapters.

Three request shapes share one response parser: tag search, group pool and a
user's public photos. Responses are the REST API's XML format.
"""

import re
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from stream_aggregation.core.adapters.base import SourceAdapter, decode_html, strip_html
from stream_aggregation.core.exceptions import ConfigurationError
from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType
from stream_aggregation.models.feed_item import ImageFeedItem, ImageSize

logger = get_logger(__name__)

DEFAULT_REST_URL = "https://api.flickr.com/services/rest/"
PHOTO_EXTRAS = "icon_server,description,date_upload,date_taken,owner_name,path_alias,url_m"
DEFAULT_BUDDY_ICON = "https://www.flickr.com/images/buddyicon.gif"

_API_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{32}$")


def validate_api_key(api_key: Optional[str]) -> str:
    """Check that an API key looks like a Flickr key.

    Raises:
        ConfigurationError: If the key is missing or malformed
    """
    if not api_key:
        raise ConfigurationError("Flickr API key is not configured", SourceType.FLICKR)
    if not _API_KEY_PATTERN.match(api_key):
        raise ConfigurationError(
            "Flickr API key must be 32 hexadecimal characters", SourceType.FLICKR
        )
    return api_key


def sizes_query(api_key: str, photo_id: str, rest_url: str = DEFAULT_REST_URL) -> str:
    """Build a flickr.photos.getSizes request for one photo."""
    params = {
        "method": "flickr.photos.getSizes",
        "api_key": api_key,
        "photo_id": photo_id,
    }
    return f"{rest_url}?{urlencode(params)}"


def parse_image_sizes(body: str) -> dict[ImageSize, str]:
    """Parse a flickr.photos.getSizes response.

    Args:
        body: Response body

    Returns:
        Map of rendition size to image URL (empty if the response is unusable)
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        logger.warning(f"Unparseable Flickr sizes response: {e}")
        return {}

    if root.get("stat") != "ok":
        logger.warning(f"Flickr sizes request failed: {_error_message(root)}")
        return {}

    sizes = {}
    for node in root.iterfind("./sizes/size"):
        if node.get("media", "photo") != "photo" or not node.get("source"):
            continue
        try:
            size = ImageSize(width=int(node.get("width")), height=int(node.get("height")))
        except (TypeError, ValueError):
            continue
        sizes[size] = node.get("source")
    return sizes


def _error_message(root: ET.Element) -> str:
    err = root.find("./err")
    if err is None:
        return "unknown error"
    return f"{err.get('code')}: {err.get('msg')}"


class FlickrAdapter(SourceAdapter):
    """Common request building and parsing for Flickr photo lists."""

    source_type = SourceType.FLICKR
    min_poll_interval = timedelta(minutes=1)
    error_cooldown = timedelta(minutes=10)
    status_cooldowns = {
        502: timedelta(minutes=5),  # down or being upgraded
        500: timedelta(minutes=2),
        503: timedelta(minutes=2),  # overloaded
    }

    method: str = ""

    def __init__(
        self,
        query: str,
        api_key: Optional[str],
        min_date: Optional[datetime] = None,
        rest_url: str = DEFAULT_REST_URL,
        page_size: int = 500,
    ):
        super().__init__(query, min_date)
        self.api_key = validate_api_key(api_key)
        self.rest_url = rest_url
        self.page_size = page_size

        # Newest upload time seen, as a unix timestamp
        self.min_upload_date = 0

    def query_params(self) -> dict:
        """Method-specific request parameters."""
        return {}

    def build_query(self) -> str:
        params = {
            "method": self.method,
            "api_key": self.api_key,
            "page": 1,
            "per_page": self.page_size,
            "extras": PHOTO_EXTRAS,
        }
        params.update(self.query_params())
        return f"{self.rest_url}?{urlencode(params)}"

    def parse(self, body: str) -> list[ImageFeedItem]:
        root = ET.fromstring(body)
        if root.tag != "rsp":
            raise ValueError(f"Unexpected root element <{root.tag}>")
        if root.get("stat") != "ok":
            logger.warning(f"Flickr request '{self.query}' failed: {_error_message(root)}")
            return []

        items = []
        for node in root.iterfind("./photos/photo"):
            try:
                item = self._transform(node)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed photo {node.get('id')}: {type(e).__name__}: {e}")
                continue
            if item is not None:
                items.append(item)
        return items

    def _transform(self, node: ET.Element) -> Optional[ImageFeedItem]:
        photo_id = node.attrib["id"]
        owner = node.attrib["owner"]
        uploaded = int(node.attrib["dateupload"])
        self.min_upload_date = max(self.min_upload_date, uploaded)

        date = datetime.fromtimestamp(uploaded, tz=timezone.utc)
        if self.is_too_old(date):
            return None

        thumbnail_uri = (
            f"https://farm{node.attrib['farm']}.staticflickr.com/"
            f"{node.attrib['server']}/{photo_id}_{node.attrib['secret']}_m.jpg"
        )
        thumbnail_size = None
        sizes = {}
        if node.get("url_m"):
            thumbnail_uri = node.get("url_m")
            if node.get("width_m") and node.get("height_m"):
                thumbnail_size = ImageSize(width=int(node.get("width_m")), height=int(node.get("height_m")))
                sizes[thumbnail_size] = thumbnail_uri

        title = decode_html(node.get("title")).strip()
        caption = decode_html(strip_html(node.findtext("./description"))).strip()
        author = decode_html(node.get("ownername")).strip()

        return ImageFeedItem(
            uri=f"https://www.flickr.com/photos/{node.get('pathalias') or owner}/{photo_id}",
            date=date,
            author=author or None,
            avatar_uri=self._avatar_uri(node, owner),
            source_type=SourceType.FLICKR,
            service_id=photo_id,
            title=title or None,
            caption=caption or None,
            thumbnail_uri=thumbnail_uri,
            thumbnail_size=thumbnail_size,
            sizes=sizes,
        )

    @staticmethod
    def _avatar_uri(node: ET.Element, owner: str) -> str:
        icon_server = node.get("iconserver")
        if not icon_server or icon_server == "0":
            return DEFAULT_BUDDY_ICON
        return f"https://farm{node.get('iconfarm')}.staticflickr.com/{icon_server}/buddyicons/{owner}.jpg"


class FlickrSearchAdapter(FlickrAdapter):
    """Recent photos matching any of a comma-separated tag list."""

    method = "flickr.photos.search"

    def query_params(self) -> dict:
        return {
            "sort": "date-posted-desc",
            "tags": self.query,
            "min_upload_date": self.min_upload_date,
        }


class FlickrGroupAdapter(FlickrAdapter):
    """Photos in a group pool; the query is the group id."""

    method = "flickr.groups.pools.getPhotos"

    def query_params(self) -> dict:
        return {"group_id": self.query}


class FlickrUserAdapter(FlickrAdapter):
    """Public photos of one member; the query is the member's NSID."""

    method = "flickr.people.getPublicPhotos"

    def query_params(self) -> dict:
        return {"user_id": self.query}
