"""Command line interface for testing configuration loading"""
from . import settings_conf

SECRET_MARKERS = ('secret', 'key', 'passkey', 'credential')

def mask(key: str, value) -> str:
    """Hide secret values, keeping the last 4 characters."""
    if value and any(marker in key for marker in SECRET_MARKERS):
        value = str(value)
        return '*' * max(len(value) - 4, 4) + value[-4:]
    return str(value)

def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in sorted(settings_conf.items()):
        print(f"{key}: {mask(key, value)}")

if __name__ == "__main__":
    main()
