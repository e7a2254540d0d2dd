import logging
import logging.config


def build_logging_config(level="INFO"):
    level = str(level or "INFO").upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,

        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            },
        },

        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": level,
            },
        },

        "loggers": {
            "quizlead_crm": {
                "level": level,
            },
            # Request logs from the dev server
            "werkzeug": {
                "level": "INFO",
            },
        },

        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def setup_logging(level="INFO"):
    logging.config.dictConfig(build_logging_config(level))
    logging.getLogger("quizlead_crm").debug("Logging initialized")
