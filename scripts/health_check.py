#!/usr/bin/env python3
"""
Health check script for a fieldsync sync server.

This script checks:
- Configuration validation
- Reachability of the server's /health endpoint

Can be used for monitoring, alerting, or pre-deployment validation.

Usage:
    python scripts/health_check.py [--config CONFIG_PATH] [--url SERVER_URL] [--json]

Exit codes:
    0: All checks passed
    1: One or more checks failed
"""

import argparse
import json
import sys
from datetime import datetime, timezone

import requests
import structlog

from fieldsync.utils.config_loader import ConfigLoader

log = structlog.stdlib.get_logger()


class HealthChecker:
    """Performs health checks against a sync server."""

    def __init__(self, config_path: str | None = None, server_url: str | None = None):
        self.config_path = config_path
        self.server_url = server_url
        self.timeout = 10.0
        self.results: dict[str, dict] = {}

    def check_configuration(self) -> bool:
        check_name = "configuration"
        try:
            loader = ConfigLoader()
            config = loader.load_config(self.config_path)
            warnings = loader.validate_config(config)
        except Exception as e:
            self.results[check_name] = {"status": "fail", "message": str(e)}
            log.error("health_check_failed", check=check_name, error=str(e))
            return False

        self.server_url = self.server_url or config.client.server_url
        self.timeout = config.client.request_timeout_seconds
        self.results[check_name] = {
            "status": "pass",
            "message": "Configuration loaded successfully",
            "details": {"server_url": self.server_url, "warnings": warnings},
        }
        return True

    def check_server(self) -> bool:
        check_name = "server"
        if not self.server_url:
            self.results[check_name] = {"status": "fail", "message": "No server URL configured"}
            return False

        url = f"{self.server_url.rstrip('/')}/health"
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            self.results[check_name] = {"status": "fail", "message": f"Unreachable: {e}"}
            log.error("health_check_failed", check=check_name, url=url, error=str(e))
            return False

        if response.status_code != 200:
            self.results[check_name] = {
                "status": "fail",
                "message": f"HTTP {response.status_code}",
            }
            log.error("health_check_failed", check=check_name, url=url, status_code=response.status_code)
            return False

        self.results[check_name] = {
            "status": "pass",
            "message": "Server is healthy",
            "details": response.json(),
        }
        return True

    def run_all_checks(self) -> bool:
        """
        Run all health checks.

        Returns:
            True if all checks passed, False otherwise
        """
        checks = [self.check_configuration(), self.check_server()]
        passed = all(checks)
        log.info("health_checks_completed", passed=passed)
        return passed

    def get_summary(self) -> dict:
        passed = sum(1 for result in self.results.values() if result["status"] == "pass")
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "overall_status": "healthy" if passed == len(self.results) else "unhealthy",
            "checks_passed": passed,
            "checks_total": len(self.results),
            "checks": self.results,
        }


def main():
    """Main entry point for health check script."""
    parser = argparse.ArgumentParser(description="Health check for a fieldsync server")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument("--url", type=str, help="Server URL (overrides client.server_url)", default=None)
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    args = parser.parse_args()

    checker = HealthChecker(config_path=args.config, server_url=args.url)
    all_passed = checker.run_all_checks()
    summary = checker.get_summary()

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print("=" * 60)
        print("HEALTH CHECK SUMMARY")
        print("=" * 60)
        for name, result in summary["checks"].items():
            print(f"{name:<15} {result['status'].upper():<6} {result['message']}")
        print("=" * 60)
        print(f"Overall: {summary['overall_status']}")

    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
