"""
Register a provider in the directory.

Examples:
  python scripts/create_provider.py provider10 "Ana Smith" +15551234567
  python scripts/create_provider.py 12 "Bo Lee" +15557654321 --email bo@example.com --area Miami --area Tampa
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path so we can import from domain, repositories, services
sys.path.insert(0, str(Path(__file__).parent.parent))

from domain.errors import BrokerError
from domain.time import utc_now
from repositories.client import create_supabase_client
from repositories.provider_repository import create_provider, get_provider_by_id
from services.settings import BrokerSettings


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Register a provider for SMS lead offers")
    parser.add_argument("provider_id", help="Provider id (numeric ids become 'provider<n>')")
    parser.add_argument("name", help="Display name")
    parser.add_argument("phone", help="SMS number, e.g. +15551234567")
    parser.add_argument("--email", help="Email used as the Stripe customer email")
    parser.add_argument(
        "--area",
        dest="areas",
        action="append",
        default=[],
        help="Service area (city); repeat for several. None means all areas.",
    )
    parser.add_argument("--unverified", action="store_true", help="Register without verification")
    args = parser.parse_args()

    settings = BrokerSettings.from_env()
    db = create_supabase_client(settings.supabase_url, settings.supabase_key)

    try:
        existing = get_provider_by_id(db, args.provider_id)
        if existing is not None:
            print(f"Provider already exists: {existing.provider_id} ({existing.name})")
            return 1

        provider = create_provider(
            db,
            provider_id=args.provider_id,
            name=args.name,
            phone=args.phone,
            email=args.email,
            service_areas=args.areas,
            is_verified=not args.unverified,
            now=utc_now(),
        )
    except BrokerError as e:
        print(f"[ERROR] {e}")
        return 1

    print("[SUCCESS] Provider created")
    print(f"  Provider ID: {provider.provider_id}")
    print(f"  Name:        {provider.name}")
    print(f"  Areas:       {', '.join(provider.service_areas) or 'All'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
