from datetime import datetime


def print_banner(service_name: str, version: str = "1.0.0"):
    """
    Print the startup banner.

    Args:
        service_name: Name of the service starting up (e.g., "VPS-Agent")
        version: Version number of the service (default: "1.0.0")
    """
    print("=" * 80)
    print("  VPS AGENT - Remote host agent for the tunnel controller")
    print("=" * 80)
    print(f"  Service:        {service_name}")
    print(f"  Version:        {version}")
    print(f"  Started:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("-" * 80)
    print("  Description:    Heartbeats, remote commands and GOST config sync")
    print("  Commands:       ping | execute | deploy | reload_gost_config | restart")
    print("=" * 80)
    print()
