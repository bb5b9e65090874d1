## Main Execution Script
from aiohttp import web
from controllers import create_app
from tools.config import ConfigError, LOG_LEVELS, load_config
from tools.logger import *
from tools.ssl import build_server_ssl_context, extract_common_name
import argparse
import sys


def main():
    parser = argparse.ArgumentParser(description="Berth Agent")
    parser.add_argument(
        "-l",
        "--log-level",
        choices=list(LOG_LEVELS),
        default=None,
        help="Set the logging level, overriding LOG_LEVEL (use -l or --log-level)",
    )
    args = parser.parse_args()

    try:
        config = load_config()
    except ConfigError as e:
        log_critical(str(e))
        sys.exit(1)

    set_log_level(args.log_level or config.log_level)
    configure_file_logging(config.log_dir)

    ssl_context = None
    if config.is_https_enabled():
        ssl_context = build_server_ssl_context(config.tls_cert_file, config.tls_key_file)
        log_info(
            f"HTTPS enabled with certificate for "
            f"{extract_common_name(config.tls_cert_file)}"
        )
    else:
        log_warning("TLS_CERT_FILE/TLS_KEY_FILE not set, serving plain HTTP")

    app = create_app(config)

    log_info(f"Starting agent on {config.host}:{config.port}")
    try:
        web.run_app(
            app,
            host=config.host,
            port=config.port,
            ssl_context=ssl_context,
            print=None,
        )
    except KeyboardInterrupt:
        log_warning("Keyboard interrupt received. Shutting down.")


if __name__ == "__main__":
    main()
