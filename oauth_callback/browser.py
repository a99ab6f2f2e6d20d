"""Launch the user's browser for the authorization step."""

import logging
import webbrowser

logger = logging.getLogger(__name__)


def open_browser(url: str) -> bool:
    """Open a URL in the OS default browser.

    Failure is not fatal: the user can still navigate to the URL by hand,
    so it is logged instead of raised.

    Returns:
        True if a browser was launched
    """
    try:
        opened = webbrowser.open(url)
    except Exception as e:
        logger.warning(f"Could not open browser ({type(e).__name__}: {e}). Please open this URL manually:\n{url}")
        return False

    if not opened:
        logger.warning(f"Could not open browser. Please open this URL manually:\n{url}")
    return opened
