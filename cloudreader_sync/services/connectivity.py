import logging

logger = logging.getLogger(__name__)


class ConnectivityService:
    """Answers "can we reach the server right now?" before any schedulable work starts."""

    def __init__(self, api_client, probe=None):
        self.api = api_client
        # Host-supplied check (e.g. the device's Wi-Fi state) replaces the HTTP probe
        self.probe = probe
        self.last_state = None

    def is_online(self) -> bool:
        if not self.api.is_configured():
            online = False
        elif self.probe is not None:
            try:
                online = bool(self.probe())
            except Exception as e:
                logger.warning(f"Connectivity probe raised: {e}")
                online = False
        else:
            online = self.api.ping()

        if online != self.last_state:
            logger.info("🌐 Network available" if online else "📴 Network unavailable")
            self.last_state = online
        return online
