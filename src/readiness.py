"""Pre-flight readiness checks for deployments.

- Master endpoint resolution and SSH reachability (CLI preflight)
- Kubernetes API server reachability (after the kubeconfig is fetched)
"""

import socket

import requests
import urllib3

# Cluster API servers present self-signed certs; the kubeconfig carries the CA
# for the real client, the check only looks for something answering
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def validate_api_server(server_url: str, timeout: float = 10.0) -> tuple[bool, str]:
    """Check that a Kubernetes API server answers on /version.

    401 and 403 count as reachable: the request is anonymous, and clusters that
    disable anonymous access still prove they are up by rejecting it.

    Args:
        server_url: API server URL from the kubeconfig (e.g., https://198.51.100.10:443)

    Returns:
        (success, message) tuple
    """
    url = f"{server_url.rstrip('/')}/version"
    try:
        resp = requests.get(url, verify=False, timeout=timeout)
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {server_url}"
    except requests.exceptions.RequestException as e:
        return False, f"Cannot connect to {server_url}: {e}"

    if resp.status_code == 200:
        try:
            version = resp.json().get('gitVersion', 'unknown')
        except ValueError:
            version = 'unknown'
        return True, f"Kubernetes API accessible (version {version})"

    if resp.status_code in (401, 403):
        return True, f"Kubernetes API reachable at {server_url} (anonymous access refused)"

    return False, f"Unexpected API response: {resp.status_code} - {resp.text[:100]}"


def validate_host_resolvable(hostname: str) -> tuple[bool, str]:
    """Check if hostname resolves to an IP address.

    Returns:
        (success, message) tuple
    """
    try:
        ip = socket.gethostbyname(hostname)
        return True, f"{hostname} resolves to {ip}"
    except socket.gaierror:
        return False, (
            f"Cannot resolve master endpoint '{hostname}'. "
            f"Check master_endpoint in the deployment config."
        )


def validate_host_reachable(host: str, port: int = 22, timeout: float = 5.0) -> tuple[bool, str]:
    """Check if host accepts TCP connections on port.

    Returns:
        (success, message) tuple
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True, f"Host {host} reachable on port {port}"
    except socket.timeout:
        return False, f"Timeout connecting to {host}:{port}"
    except OSError as e:
        return False, f"Cannot connect to {host}:{port}: {e}"


def validate_master(hostname: str, port: int) -> tuple[bool, str]:
    """Combined master check: resolution, then the SSH port.

    Returns:
        (success, message) tuple
    """
    success, message = validate_host_resolvable(hostname)
    if not success:
        return False, message

    success, ssh_msg = validate_host_reachable(hostname, port=port)
    if not success:
        return False, f"Master {hostname} SSH not reachable: {ssh_msg}"

    return True, f"Master {hostname} reachable on port {port}"
