from typing import List, Optional

from deploykit.core.errors import RenderError
from deploykit.deploy.models import Certificate, ConfigRecord, LocationRule

DEFAULT_CERT_FILE = "/etc/nginx/ssl/cert.crt"
DEFAULT_KEY_FILE = "/etc/nginx/ssl/cert.key"

LOG_FORMATS = {
    "main": [
        "    log_format main '$remote_addr - $remote_user [$time_local] \"$request\" '",
        "                    '$status $body_bytes_sent \"$http_referer\" '",
        "                    '\"$http_user_agent\" \"$http_x_forwarded_for\"';",
    ],
    "json": [
        "    log_format json escape=json '{'",
        "        '\"time_local\":\"$time_local\",'",
        "        '\"remote_addr\":\"$remote_addr\",'",
        "        '\"remote_user\":\"$remote_user\",'",
        "        '\"request\":\"$request\",'",
        "        '\"status\":\"$status\",'",
        "        '\"body_bytes_sent\":\"$body_bytes_sent\",'",
        "        '\"request_time\":\"$request_time\",'",
        "        '\"http_referrer\":\"$http_referer\",'",
        "        '\"http_user_agent\":\"$http_user_agent\",'",
        "        '\"http_x_forwarded_for\":\"$http_x_forwarded_for\"'",
        "    '}';",
    ],
}

PROXY_HEADERS = [
    "proxy_set_header Host $host;",
    "proxy_set_header X-Real-IP $remote_addr;",
    "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
    "proxy_set_header X-Forwarded-Proto $scheme;",
]

MATCH_MODIFIERS = {"prefix": "", "exact": "= ", "regex": "~ "}


def _validate(record: ConfigRecord, certificate: Optional[Certificate]):
    if record.enable_http and record.http_port <= 0:
        raise RenderError(f"invalid http_port: {record.http_port}")
    if record.enable_https and record.https_port <= 0:
        raise RenderError(f"invalid https_port: {record.https_port}")
    if record.worker_connections <= 0:
        raise RenderError(f"invalid worker_connections: {record.worker_connections}")
    if record.log_format not in LOG_FORMATS:
        raise RenderError(f"unknown log_format: {record.log_format}")
    if record.enable_https and record.certificate_id and certificate is None:
        raise RenderError(f"certificate {record.certificate_id} not found")
    for i, loc in enumerate(record.locations):
        if not loc.path.strip():
            raise RenderError(f"location #{i + 1} has no path")


def _location_block(loc: LocationRule) -> List[str]:
    lines = [f"        location {MATCH_MODIFIERS[loc.match_type]}{loc.path} {{"]
    if loc.proxy_pass:
        lines.append(f"            proxy_pass {loc.proxy_pass};")
        lines += ["            " + h for h in PROXY_HEADERS]
    if loc.root:
        lines.append(f"            root {loc.root};")
    if loc.try_files:
        lines.append(f"            try_files {loc.try_files};")
    elif not loc.proxy_pass and not loc.root:
        lines.append("            try_files $uri $uri/ =404;")
    lines.append("        }")
    return lines


def _locations(record: ConfigRecord) -> List[str]:
    if not record.enable_proxy:
        return [
            "        location / {",
            "            try_files $uri $uri/ =404;",
            "        }",
        ]
    if not record.locations:
        return (
            ["        location / {", f"            proxy_pass {record.proxy_pass};"]
            + ["            " + h for h in PROXY_HEADERS]
            + ["        }"]
        )
    lines: List[str] = []
    for loc in record.locations:
        lines += _location_block(loc)
    return lines


def _site_body(record: ConfigRecord) -> List[str]:
    return [
        f"        root {record.root_path};",
        f"        index {record.index_files};",
        "",
    ] + _locations(record)


def render_config(record: ConfigRecord, certificate: Optional[Certificate] = None) -> str:
    """
    Render an nginx.conf from a config record.

    ``certificate`` is the resolved record for ``record.certificate_id``;
    without a certificate reference the stock /etc/nginx/ssl paths are used.
    Output is a pure function of the inputs.
    """
    _validate(record, certificate)

    lines = [
        "# nginx configuration",
        "# generated by deploykit",
        f"# config name: {record.name}",
        "",
        "user nobody;",
        f"worker_processes {record.worker_processes};",
        f"error_log {record.error_log_path} warn;",
        "pid /var/run/nginx.pid;",
        "",
        "events {",
        f"    worker_connections {record.worker_connections};",
        "    use epoll;",
        "    multi_accept on;",
        "}",
        "",
        "http {",
        "    include mime.types;",
        "    default_type application/octet-stream;",
        "",
        "    # logging",
    ]
    lines += LOG_FORMATS[record.log_format]
    lines += [
        f"    access_log {record.access_log_path} {record.log_format};",
        "",
        "    sendfile on;",
        "    tcp_nopush on;",
        "    tcp_nodelay on;",
        "    keepalive_timeout 65;",
        "    types_hash_max_size 2048;",
        "",
        f"    client_max_body_size {record.client_max_body_size};",
    ]

    if record.gzip:
        lines += [
            "",
            "    # gzip",
            "    gzip on;",
            "    gzip_vary on;",
            "    gzip_proxied any;",
            "    gzip_comp_level 6;",
            "    gzip_types text/plain text/css text/xml application/json application/javascript "
            "application/rss+xml application/atom+xml image/svg+xml;",
        ]

    if record.enable_http:
        lines += [
            "",
            "    # HTTP server",
            "    server {",
            f"        listen {record.http_port};",
            f"        server_name {record.server_name};",
        ]
        if record.http_to_https:
            lines.append("        return 301 https://$host$request_uri;")
        else:
            lines += _site_body(record)
        lines.append("    }")

    if record.enable_https:
        cert_file = certificate.cert_file_path if certificate else DEFAULT_CERT_FILE
        key_file = certificate.key_file_path if certificate else DEFAULT_KEY_FILE
        lines += [
            "",
            "    # HTTPS server",
            "    server {",
            f"        listen {record.https_port} ssl http2;",
            f"        server_name {record.server_name};",
            "",
            f"        ssl_certificate {cert_file};",
            f"        ssl_certificate_key {key_file};",
            "",
            "        ssl_session_timeout 1d;",
            "        ssl_session_cache shared:SSL:50m;",
            "        ssl_session_tickets off;",
            "",
            "        ssl_protocols TLSv1.2 TLSv1.3;",
            "        ssl_ciphers ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
            "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384;",
            "        ssl_prefer_server_ciphers off;",
            "",
        ]
        lines += _site_body(record)
        lines.append("    }")

    if record.custom_config:
        lines += ["", "    # custom configuration", record.custom_config.rstrip("\n")]

    lines.append("}")
    return "\n".join(lines) + "\n"
