#!/usr/bin/env python3
"""
authflow - login orchestration for Google, GitHub and Sign-In-With-Ethereum.
"""

import argparse
import json
import logging
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep authflow imports lazy (inside functions) so `--help` stays fast and the
# server dependencies are only imported for `--serve`.
#


def print_authorize_url(provider: str, redirect: Optional[str] = None) -> int:
    """Print a fresh authorization URL for `provider`."""
    from authflow.auth.config import load_auth_config
    from authflow.auth.oauth import build_authorization_url, build_providers
    from authflow.auth.state_token import StateTokenCodec

    cfg = load_auth_config()
    p = build_providers(cfg).get((provider or "").strip().lower())
    if p is None:
        enabled = ", ".join(cfg.enabled_providers) or "none"
        print(f"❌ Provider '{provider}' is not enabled (enabled: {enabled})")
        return 1
    url, _token = build_authorization_url(
        p, callback_uri=cfg.callback_uri, codec=StateTokenCodec.from_config(cfg), redirect_hint=redirect
    )
    print(url)
    return 0


def print_decoded_state(token: str) -> int:
    """Decode a state token with the configured secret."""
    from authflow.auth.config import load_auth_config
    from authflow.auth.state_token import Err, StateTokenCodec

    codec = StateTokenCodec.from_config(load_auth_config())
    result = codec.decode(token)
    if isinstance(result, Err):
        print(f"❌ Cannot decode state: {result.reason}")
        return 1
    p = result.value
    print(json.dumps({"provider": p.provider, "redirect": p.redirect, "random": p.nonce}, indent=2))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Multi-provider login orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the login server (serves /login callback)
  python main.py --serve --port 8080

  # Print a Google authorization URL that resumes at /dashboard
  python main.py --authorize-url google --redirect /dashboard

  # Inspect a state token (needs the same AUTHFLOW_STATE_SECRET)
  python main.py --decode-state <token>
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the login HTTP server")
    parser.add_argument("--host", default="127.0.0.1", help="Server bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--authorize-url", metavar="PROVIDER", help="Print an authorization URL (google|github)")
    parser.add_argument("--redirect", help="Post-login path carried in the state token (with --authorize-url)")
    parser.add_argument("--decode-state", metavar="TOKEN", help="Decode an OAuth state token")

    args = parser.parse_args()

    if args.serve:
        from authflow.api.server import run

        run(host=args.host, port=args.port)
        return 0
    if args.authorize_url:
        return print_authorize_url(args.authorize_url, args.redirect)
    if args.decode_state:
        return print_decoded_state(args.decode_state)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
