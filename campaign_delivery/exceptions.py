# filename: exceptions.py


class CampaignDeliveryError(Exception):
    """Base class for errors raised by the delivery engine"""


class ConfigurationError(CampaignDeliveryError):
    """SMTP or store settings are missing; the current operation cannot proceed"""


class NotFound(CampaignDeliveryError):
    pass


class InvalidTransition(CampaignDeliveryError):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")


class InvalidTargetConfig(CampaignDeliveryError):
    pass


class RateLimitExceeded(CampaignDeliveryError):
    def __init__(self, message: str, reset_time=None):
        self.reset_time = reset_time
        super().__init__(message)


class Unauthorized(CampaignDeliveryError):
    pass


class Forbidden(CampaignDeliveryError):
    pass


class InvalidCampaignRequest(CampaignDeliveryError):
    """The campaign is not set up for the requested action"""
