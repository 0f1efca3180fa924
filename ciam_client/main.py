"""
Main entry point for the CIAM login client.

Walks one interactive login on the terminal: password, multi-factor
challenge, eSign and device binding, then prints the resulting profile.
"""

import sys
import argparse
import asyncio
import getpass
import json
import logging
from typing import Optional, List

from ciam_shared.exceptions import CiamClientError
from ciam_shared.logging_config import setup_logging, LogLevel, LogFormat
from ciam_shared.models import (
    SessionState, ChallengeMethod, Transaction, FailureKind, SessionInfo
)
from ciam_client.api_client import IdentityServiceClient
from ciam_client.config import ClientConfiguration
from ciam_client.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ciam-login",
        description="CIAM login client",
        epilog="""
Examples:
  %(prog)s --username alice             # Interactive login
  %(prog)s --username alice --remember  # Remember the username for next time
  %(prog)s --json                       # Print the profile as JSON
  %(prog)s --sessions                   # Also list the account's active sessions
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument("--username", "-u", type=str, metavar="NAME",
                        help="Username (defaults to the remembered one)")
    parser.add_argument("--remember", action="store_true",
                        help="Remember the username after a successful login")
    parser.add_argument("--sessions", action="store_true",
                        help="List the active sessions of the account after signing in")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--url", type=str, metavar="URL",
                              help="Override Identity Service URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Print the profile in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")

    return parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from command line arguments and configuration."""
    if args.debug:
        level = LogLevel.DEBUG
    elif args.json:
        level = LogLevel.ERROR
    else:
        try:
            level = LogLevel(config.get_log_level().upper())
        except ValueError:
            level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format().lower())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        enable_audit=args.debug
    )


def _prompt(text: str) -> str:
    return input(text).strip()


def _confirm(text: str, default: bool = False) -> bool:
    suffix = " [Y/n] " if default else " [y/N] "
    answer = _prompt(text + suffix).lower()
    if not answer:
        return default
    return answer in ('y', 'yes')


def _choose_method(orchestrator: SessionOrchestrator):
    """Ask which challenge method (and OTP channel) to use."""
    methods = orchestrator.available_methods
    if len(methods) == 1:
        method = methods[0]
    else:
        for index, candidate in enumerate(methods, 1):
            print(f"  {index}. {candidate.value}")
        choice = _prompt("Verification method: ")
        try:
            method = methods[int(choice) - 1]
        except (ValueError, IndexError):
            method = methods[0]

    option_id = None
    options = orchestrator.otp_options
    if method is ChallengeMethod.OTP and len(options) > 1:
        for index, option in enumerate(options, 1):
            print(f"  {index}. {option.value}")
        choice = _prompt("Send the code to: ")
        try:
            option_id = options[int(choice) - 1].option_id
        except (ValueError, IndexError):
            option_id = options[0].option_id

    return method, option_id


async def _wait_for_push(orchestrator: SessionOrchestrator, transaction: Transaction) -> None:
    """Wait until the push challenge is no longer active."""
    if transaction.display_value is not None:
        print(f"Approve the sign-in on your device. Number shown: {transaction.display_value}")
    else:
        print("Approve the sign-in on your device.")

    done = asyncio.Event()

    def on_state_change(old_state: SessionState, new_state: SessionState) -> None:
        if new_state is not SessionState.CHALLENGE_ACTIVE:
            done.set()

    orchestrator.add_state_change_callback(on_state_change)
    if orchestrator.state is not SessionState.CHALLENGE_ACTIVE:
        return
    await done.wait()


async def run_login(args, config: ClientConfiguration) -> int:
    """
    Run one interactive login.

    Returns:
        Exit code (0 when the session ends up authenticated)
    """
    identity = IdentityServiceClient.from_config(config)
    orchestrator = SessionOrchestrator.from_config(config, identity)

    def on_challenge_update(transaction: Transaction) -> None:
        if transaction.remaining_seconds is not None:
            logger.info(f"Challenge {transaction.transaction_id}: {transaction.remaining_seconds:.0f}s left")

    orchestrator.add_challenge_update_callback(on_challenge_update)

    try:
        username = args.username or orchestrator.remembered_username
        if not username:
            username = _prompt("Username: ")
        password = getpass.getpass(f"Password for {username}: ")

        await orchestrator.login(username, password, remember_username=args.remember)

        while orchestrator.state not in (SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED):
            state = orchestrator.state

            if state is SessionState.ERROR:
                error = orchestrator.error_state
                print(f"Error: {error.message}", file=sys.stderr)
                if (error.kind in (FailureKind.CHALLENGE_REJECTED, FailureKind.CHALLENGE_EXPIRED,
                                   FailureKind.INVALID_PROOF)
                        and orchestrator.available_methods
                        and _confirm("Try another verification?", default=True)):
                    orchestrator.clear_error()
                    continue
                return 1

            if state is SessionState.MFA_PENDING:
                method, option_id = _choose_method(orchestrator)
                transaction = await orchestrator.select_mfa_method(method, option_id)
                if transaction is None:
                    print(f"Error: {orchestrator.error_state.message}", file=sys.stderr)
                    if not _confirm("Try again?", default=True):
                        return 1
                    continue
                if method is ChallengeMethod.OTP:
                    code = getpass.getpass("Verification code: ")
                    await orchestrator.submit_challenge_proof(code)
                else:
                    await _wait_for_push(orchestrator, transaction)

            elif state is SessionState.ESIGN_PENDING:
                document = orchestrator.esign_document
                if document.document_url:
                    print(f"Please review the terms: {document.document_url}")
                accept = _confirm("Do you accept the terms?")
                await orchestrator.respond_to_esign(accept)

            elif state is SessionState.DEVICE_BIND_PENDING:
                trust = _confirm("Trust this device?")
                await orchestrator.respond_to_device_bind(trust)

            elif state is SessionState.CHALLENGE_ACTIVE:
                code = getpass.getpass("Verification code: ")
                await orchestrator.submit_challenge_proof(code)

            else:
                logger.error(f"Unexpected session state {state.value}")
                return 1

        if orchestrator.state is not SessionState.AUTHENTICATED:
            error = orchestrator.error_state
            if error:
                print(f"Error: {error.message}", file=sys.stderr)
            return 1

        sessions = None
        if args.sessions:
            sessions = await orchestrator.list_sessions()
            if sessions is None:
                print(f"Warning: {orchestrator.error_state.message}", file=sys.stderr)
                if orchestrator.state is not SessionState.AUTHENTICATED:
                    return 1

        print_profile(orchestrator, args.json, sessions)
        return 0

    finally:
        await orchestrator.shutdown()


def print_profile(
    orchestrator: SessionOrchestrator,
    as_json: bool = False,
    sessions: Optional[List[SessionInfo]] = None
) -> None:
    profile = orchestrator.credential.to_profile()
    if as_json:
        if sessions is not None:
            profile['sessions'] = [session.to_dict() for session in sessions]
        print(json.dumps(profile, indent=2))
        return

    print(f"✓ Signed in as {profile['display_name'] or profile['subject']}")
    if profile['email']:
        print(f"  Email: {profile['email']}")
    if profile['roles']:
        print(f"  Roles: {', '.join(profile['roles'])}")
    if profile['last_login_at']:
        print(f"  Last login: {profile['last_login_at']}")
    if sessions:
        print("  Active sessions:")
        for session in sessions:
            current = " (this session)" if session.session_id == orchestrator.credential.session_id else ""
            seen = session.last_seen_at.isoformat() if session.last_seen_at else "unknown"
            print(f"    {session.session_id}  last seen {seen}  {session.user_agent or ''}{current}")


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the client."""
    args = None
    try:
        args = parse_arguments(argv)

        config = ClientConfiguration(args.config)
        if args.url:
            config.set_override('identity.url', args.url)

        configure_logging(args, config)
        return asyncio.run(run_login(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except CiamClientError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        if not getattr(args, 'json', False):
            logger.exception("Fatal error in main")
        return 1


if __name__ == "__main__":
    sys.exit(main())
