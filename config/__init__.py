from config.settings import settings, MEDIA_DIR, IS_PRODUCTION, is_production

__all__ = ["settings", "MEDIA_DIR", "IS_PRODUCTION", "is_production"]
