#!/usr/bin/env python3
import argparse
import http.server
import json
import os
import sys
import threading
import urllib.parse
import urllib.request
import webbrowser

from dotenv import load_dotenv

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
]
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_PORT = 3847

result = {}
done = threading.Event()


def build_auth_url(client_id: str, redirect_uri: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
    }
    return AUTH_URL + "?" + urllib.parse.urlencode(params)


class Handler(http.server.BaseHTTPRequestHandler):
    client_id = None
    client_secret = None
    redirect_uri = None

    def do_GET(self):
        parsed = urllib.parse.urlparse(self.path)
        qs = urllib.parse.parse_qs(parsed.query)

        if "error" in qs:
            error = qs["error"][0]
            print(f"Authorization failed: {error}")
            result["error"] = error
            self.reply(400, f"<h1>Authorization failed</h1><p>{error}</p>")
            done.set()
        elif "code" in qs:
            print("Auth code received, exchanging it for tokens...")
            try:
                result["tokens"] = self.exchange_code_for_tokens(qs["code"][0])
                self.reply(200, "<h1>Success!</h1><p>You can close this tab. "
                                "Check your terminal for the refresh token.</p>")
            except Exception as e:
                print(f"Token exchange failed: {e}")
                result["error"] = str(e)
                self.reply(500, f"<h1>Token exchange failed</h1><pre>{e}</pre>")
            done.set()
        else:
            self.reply(400, "<h1>No authorization code received</h1>")

    def reply(self, status: int, html: str):
        self.send_response(status)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(html.encode())

    def exchange_code_for_tokens(self, code: str):
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }
        req = urllib.request.Request(
            TOKEN_URL,
            data=urllib.parse.urlencode(data).encode(),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        with urllib.request.urlopen(req) as resp:
            return json.loads(resp.read().decode())

    def log_message(self, *args, **kwargs):
        pass  # silence server logs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Get a Gmail OAuth refresh token for the MCP server. "
                    "Client credentials come from a Desktop app OAuth client in Google Cloud Console."
    )
    parser.add_argument("--client-id", default=os.getenv("GMAIL_CLIENT_ID"),
                        help="OAuth client ID (default: $GMAIL_CLIENT_ID)")
    parser.add_argument("--client-secret", default=os.getenv("GMAIL_CLIENT_SECRET"),
                        help="OAuth client secret (default: $GMAIL_CLIENT_SECRET)")
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Local port to listen for the OAuth redirect (default: {DEFAULT_PORT})",
    )
    return parser.parse_args(argv)


def main():
    load_dotenv()
    args = parse_args()

    if not args.client_id or not args.client_secret:
        print("Error: set GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET (or pass --client-id/--client-secret) first.")
        print("")
        print("  export GMAIL_CLIENT_ID=your-client-id")
        print("  export GMAIL_CLIENT_SECRET=your-client-secret")
        sys.exit(1)

    redirect_uri = f"http://localhost:{args.port}"

    Handler.client_id = args.client_id
    Handler.client_secret = args.client_secret
    Handler.redirect_uri = redirect_uri

    # Start local server to catch the redirect
    server = http.server.HTTPServer(("localhost", args.port), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    auth_url = build_auth_url(args.client_id, redirect_uri)
    print("1. Open this URL in your browser:\n")
    print(f"   {auth_url}\n")
    print("2. Sign in and grant access. You'll be redirected back here automatically.\n")
    webbrowser.open(auth_url)

    print(f"Waiting for redirect on {redirect_uri} ...\n")
    try:
        done.wait()
    except KeyboardInterrupt:
        print("\nAborted.")
        sys.exit(1)
    finally:
        server.shutdown()

    if "error" in result:
        sys.exit(1)

    refresh_token = result["tokens"].get("refresh_token")
    if not refresh_token:
        print("No refresh token in the response; revoke the app's access in your Google account and retry.")
        sys.exit(1)

    print("Success! Here's your refresh token:\n")
    print(f"   GMAIL_REFRESH_TOKEN={refresh_token}\n")
    print("Add GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET and GMAIL_REFRESH_TOKEN to your .env file or MCP server config.")


if __name__ == "__main__":
    main()
