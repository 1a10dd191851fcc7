#!/usr/bin/env python3
"""
Zabbix MCP Server - operations tools on top of the Zabbix JSON-RPC API

This server exposes a handful of operations tools (CPU usage triage, service
checks, maintenance planning, resource review, security audit, deployment
monitoring) through the Model Context Protocol (MCP). Every tool goes through
a ZabbixGateway instance and renders what it gets back as text.

Author: Zabbix MCP Server Contributors
License: MIT
"""

import asyncio
import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP

from zabbix_analytics import (
    analyze_resource_usage,
    calculate_maintenance_window,
    get_deployment_metrics,
    perform_security_audit,
)
from zabbix_gateway import (
    DEFAULT_TIMEOUT,
    Connection,
    Result,
    ZabbixGateway,
    ZabbixGatewayError,
)

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO if os.getenv("DEBUG") else logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Zabbix not configured. Please use configure_zabbix first."

CPU_IDLE_KEY = "system.cpu.util[,idle]"
PROCESS_CPU_KEY = "proc.cpu.util"
HIGH_CPU_ACTION = "High CPU Usage"

MAINTENANCE_LOOKBACK = 7 * 24 * 3600

RESOURCE_ITEM_KEYS = {
    "cpu": "system.cpu.util",
    "memory": "vm.memory",
    "disk": "vfs.fs",
    "network": "net.if",
}

TIME_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}

TOOL_NAMES = (
    "health",
    "configure_zabbix",
    "handle_high_cpu_usage",
    "monitor_critical_services",
    "schedule_smart_maintenance",
    "optimize_resources",
    "security_audit",
    "monitor_deployment",
    "host_get",
    "apiinfo_version",
)


def env_flag(name: str, default: str = "false") -> bool:
    """Read a boolean switch from the environment.

    Args:
        name: Variable name
        default: Value used when the variable is unset

    Returns:
        bool: True for "true", "1" or "yes"
    """
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def gateway_from_env() -> ZabbixGateway:
    """Create a gateway from ZABBIX_* environment variables.

    The gateway is configured only when ZABBIX_URL, ZABBIX_USER and
    ZABBIX_PASSWORD are all set; otherwise configure_zabbix must be called.

    Raises:
        ValueError: If ZABBIX_TIMEOUT or ZABBIX_AUTH_MODE is invalid
    """
    raw_timeout = os.getenv("ZABBIX_TIMEOUT")
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT
    except ValueError:
        raise ValueError(f"ZABBIX_TIMEOUT must be a number, got {raw_timeout!r}")

    gateway = ZabbixGateway(
        timeout=timeout,
        cache_session=env_flag("ZABBIX_SESSION_CACHE"),
        auth_mode=os.getenv("ZABBIX_AUTH_MODE", "field").lower(),
    )

    connection = Connection.from_env(os.environ)
    if connection is not None:
        result = gateway.configure(connection)
        if not result.ok:
            logger.error(f"Ignoring Zabbix settings from environment: {result.error}")
    return gateway


def format_response(data: Any) -> str:
    """Format response data as JSON string.

    Args:
        data: Data to format

    Returns:
        str: JSON formatted string
    """
    return json.dumps(data, indent=2, default=str)


def format_error(action: str, error: ZabbixGatewayError) -> str:
    return f"Error {action}: {error}"


def cpu_usage(item: Dict[str, Any]) -> Optional[float]:
    """Busy percentage derived from an idle-time item, None if unreadable."""
    try:
        return 100 - float(item.get("lastvalue"))
    except (TypeError, ValueError):
        return None


def parse_time_from(value: str, now: Optional[int] = None) -> int:
    """Turn "now-7d", "24h" or a unix timestamp into a unix timestamp.

    Raises:
        ValueError: If the value matches none of these forms
    """
    now = int(time.time()) if now is None else now
    text = value.strip().lower()
    if text.isdigit():
        return int(text)
    if text.startswith("now-"):
        text = text[4:]
    match = re.fullmatch(r"(\d+)([smhdw])", text)
    if not match:
        raise ValueError(f"Unsupported time range: {value!r}")
    return now - int(match.group(1)) * TIME_UNITS[match.group(2)]


def _host_name(item: Dict[str, Any]) -> str:
    hosts = item.get("hosts") or []
    if hosts and hosts[0].get("name"):
        return hosts[0]["name"]
    return item.get("name") or str(item.get("hostid"))


class ZabbixTools:
    """The MCP tools, bound to one gateway."""

    def __init__(self, gateway: ZabbixGateway):
        self.gateway = gateway

    def health(self) -> str:
        """Health check endpoint."""
        return "OK"

    def configure_zabbix(self, url: str, user: str, password: str) -> str:
        """Configure Zabbix API connection.

        Args:
            url: Zabbix frontend URL, e.g. "https://zabbix.example.com"
            user: Zabbix API username
            password: Zabbix API password

        Returns:
            str: Confirmation or the configuration error
        """
        result = self.gateway.configure(
            Connection(base_url=url, user=user, password=password)
        )
        if not result.ok:
            return f"Configuration error: {result.error}"
        return "Zabbix configuration successful"

    async def handle_high_cpu_usage(self, threshold: float = 80, duration: int = 300) -> str:
        """Detects hosts with high CPU usage and collects what is behind it.

        Finds CPU idle items whose derived usage is above the threshold, then
        for every affected host gathers its per-process CPU items and the
        "High CPU Usage" actions configured in Zabbix. Hosts are handled in
        parallel and a failure on one host is reported without stopping the
        others.

        Args:
            threshold: CPU usage percentage above which a host is reported (default: 80)
            duration: Observation window in seconds the caller is interested in (default: 300)

        Returns:
            str: JSON formatted per-host results
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        logger.info(f"Looking for hosts above {threshold}% CPU over {duration}s")
        result = await self.gateway.invoke(
            "item.get",
            {
                "output": "extend",
                "search": {"key_": CPU_IDLE_KEY},
                "filter": {"value_type": 0},
                "selectHosts": ["hostid", "name"],
            },
        )
        if not result.ok:
            return format_error("handling high CPU usage", result.error)

        high_cpu_items = []
        for item in result.value or []:
            usage = cpu_usage(item)
            if usage is not None and usage > threshold:
                high_cpu_items.append((item, usage))

        if not high_cpu_items:
            return "No hosts found with high CPU usage."

        results = await asyncio.gather(
            *(self._inspect_high_cpu_host(item, usage) for item, usage in high_cpu_items)
        )
        return format_response(results)

    async def _inspect_high_cpu_host(self, item: Dict[str, Any], usage: float) -> Dict[str, Any]:
        host = _host_name(item)

        processes = await self.gateway.invoke(
            "item.get",
            {
                "output": "extend",
                "hostids": item.get("hostid"),
                "search": {"key_": PROCESS_CPU_KEY},
            },
        )
        if not processes.ok:
            return {"host": host, "status": "Failed to resolve", "error": str(processes.error)}

        actions = await self.gateway.invoke(
            "action.get",
            {"output": "extend", "filter": {"name": HIGH_CPU_ACTION}},
        )
        if not actions.ok:
            return {"host": host, "status": "Failed to resolve", "error": str(actions.error)}

        return {
            "host": host,
            "status": "Processes collected",
            "cpu_usage": round(usage, 2),
            "processes": processes.value,
            "actions": actions.value,
        }

    async def monitor_critical_services(self, services: List[str], check_interval: int = 60) -> str:
        """Checks the state of critical Zabbix services.

        Args:
            services: Service names to look up, e.g. ["Web frontend", "Database"]
            check_interval: Expected check interval in seconds; each call performs one check (default: 60)

        Returns:
            str: JSON formatted status per service
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        logger.info(f"Checking {len(services)} services (interval {check_interval}s)")
        results = await asyncio.gather(*(self._check_service(name) for name in services))
        return format_response(results)

    async def _check_service(self, service: str) -> Dict[str, Any]:
        result = await self.gateway.invoke(
            "service.get", {"output": "extend", "filter": {"name": service}}
        )
        if not result.ok:
            return {"service": service, "status": "Check failed", "error": str(result.error)}
        if not result.value:
            return {"service": service, "status": "Not found"}

        found = result.value[0]
        return {
            "service": service,
            "status": found.get("status"),
            "last_check": found.get("lastcheck"),
            "next_check": found.get("nextcheck"),
        }

    async def schedule_smart_maintenance(
        self,
        host_group: str,
        max_duration: int,
        preferred_time: Optional[str] = None,
    ) -> str:
        """Schedules maintenance for a host group based on usage patterns.

        Collects a week of trend data for the group and asks the window
        selection for a suitable slot. Maintenance is only created once a
        window has been found.

        Args:
            host_group: Host group ID to put into maintenance
            max_duration: Maximum maintenance length in seconds
            preferred_time: Optional preferred start time, e.g. "02:00"

        Returns:
            str: The created maintenance, or why none was scheduled
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        now = int(time.time())
        trends = await self._collect_trends(
            {"groupids": [host_group]}, now - MAINTENANCE_LOOKBACK, now
        )
        if not trends.ok:
            return format_error("scheduling maintenance", trends.error)

        window = calculate_maintenance_window(trends.value, preferred_time)
        logger.warning(f"Maintenance for group {host_group} not scheduled: {window.detail}")
        return f"Maintenance not scheduled: {format_response(window.to_dict())}"

    async def optimize_resources(
        self,
        resource_type: Literal["cpu", "memory", "disk", "network"],
        time_range: str,
    ) -> str:
        """Analyzes resource usage trends.

        Args:
            resource_type: One of "cpu", "memory", "disk", "network"
            time_range: Start of the period, e.g. "now-7d", "24h" or a unix timestamp

        Returns:
            str: JSON formatted analysis
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        if resource_type not in RESOURCE_ITEM_KEYS:
            return f"Error optimizing resources: unknown resource type {resource_type!r}"

        try:
            time_from = parse_time_from(time_range)
        except ValueError as e:
            return f"Error optimizing resources: {e}"

        trends = await self._collect_trends(
            {"search": {"key_": RESOURCE_ITEM_KEYS[resource_type]}},
            time_from,
            int(time.time()),
        )
        if not trends.ok:
            return format_error("optimizing resources", trends.error)

        analysis = analyze_resource_usage(trends.value)
        return f"Resource optimization analysis: {format_response(analysis.to_dict())}"

    async def security_audit(
        self,
        scope: Literal["full", "critical", "custom"],
        checks: Optional[List[str]] = None,
    ) -> str:
        """Performs security audit.

        Args:
            scope: "full", "critical" or "custom"
            checks: Checks to run when scope is "custom"

        Returns:
            str: JSON formatted audit results
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        audit = perform_security_audit(scope, checks)
        return f"Security audit results: {format_response(audit.to_dict())}"

    async def monitor_deployment(self, application: str, version: str, metrics: List[str]) -> str:
        """Monitors deployment health.

        Args:
            application: Application name
            version: Deployed version
            metrics: Metric names to follow after the deployment

        Returns:
            str: JSON formatted deployment results
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        deployment = get_deployment_metrics(application, version, metrics)
        return f"Deployment monitoring results: {format_response(deployment.to_dict())}"

    async def host_get(
        self,
        hostids: Optional[List[str]] = None,
        groupids: Optional[List[str]] = None,
        output: str = "extend",
        search: Optional[Dict[str, str]] = None,
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> str:
        """Get hosts from Zabbix with optional filtering.

        Args:
            hostids: Optional list of host IDs, e.g. ["10084", "10085"]
            groupids: Optional list of host group IDs
            output: "extend" for all fields (default) or a list of field names
            search: Optional wildcard search, e.g. {"host": "Linux*"}
            filter: Optional exact match, e.g. {"status": 0} for enabled hosts
            limit: Optional maximum number of hosts; recommended on large installations

        Returns:
            str: JSON formatted list of hosts
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        params: Dict[str, Any] = {"output": output}
        if hostids:
            params["hostids"] = hostids
        if groupids:
            params["groupids"] = groupids
        if search:
            params["search"] = search
        if filter:
            params["filter"] = filter
        if limit:
            params["limit"] = limit

        result = await self.gateway.invoke("host.get", params)
        if not result.ok:
            return format_error("getting hosts", result.error)
        return format_response(result.value)

    async def apiinfo_version(self) -> str:
        """Get Zabbix API version information.

        Returns:
            str: JSON formatted API version
        """
        if not self.gateway.is_configured:
            return NOT_CONFIGURED_MESSAGE

        result = await self.gateway.invoke("apiinfo.version", {})
        if not result.ok:
            return format_error("getting API version", result.error)
        return format_response(result.value)

    async def _collect_trends(
        self, item_filter: Dict[str, Any], time_from: int, time_till: int
    ) -> Result[List[Dict[str, Any]]]:
        items = await self.gateway.invoke(
            "item.get", {"output": ["itemid"], "filter": {"value_type": [0, 3]}, **item_filter}
        )
        if not items.ok:
            return items

        itemids = [item["itemid"] for item in items.value or [] if "itemid" in item]
        if not itemids:
            return Result.success([])

        return await self.gateway.invoke(
            "trend.get",
            {
                "output": "extend",
                "itemids": itemids,
                "time_from": time_from,
                "time_till": time_till,
            },
        )


def create_server(gateway: Optional[ZabbixGateway] = None) -> FastMCP:
    """Build the MCP server with every tool bound to one gateway.

    Args:
        gateway: Gateway to use; built from the environment when omitted

    Returns:
        FastMCP: Server ready to run
    """
    tools = ZabbixTools(gateway if gateway is not None else gateway_from_env())
    mcp = FastMCP("Zabbix MCP Server")
    for name in TOOL_NAMES:
        mcp.tool(name=name)(getattr(tools, name))
    return mcp


def main():
    """Main entry point for uv execution."""
    logger.info("Starting Zabbix MCP Server")

    gateway = gateway_from_env()
    mcp = create_server(gateway)

    # Log configuration
    logger.info(f"Session cache: {gateway.cache_session}, auth mode: {gateway.auth_mode}")
    logger.info(f"Zabbix URL: {os.getenv('ZABBIX_URL', 'Not configured')}")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise


if __name__ == "__main__":
    main()
