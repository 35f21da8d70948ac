import pytest

from deploykit.core.errors import RenderError
from deploykit.deploy.models import Certificate, ConfigRecord, LocationRule
from deploykit.deploy.render import render_config


def test_render_is_deterministic():
    rec = ConfigRecord(id="a", name="demo", enable_proxy=True, proxy_pass="http://127.0.0.1:8080")
    assert render_config(rec) == render_config(rec.model_copy(deep=True))


def test_default_site_serves_static_files():
    out = render_config(ConfigRecord(id="a", name="demo", server_name="example.com"))
    assert "# config name: demo" in out
    assert "listen 80;" in out
    assert "server_name example.com;" in out
    assert "try_files $uri $uri/ =404;" in out
    assert "log_format main" in out
    assert "access_log /var/log/nginx/access.log main;" in out
    assert "gzip on;" in out
    assert "ssl_certificate" not in out
    assert out.endswith("}\n")


def test_json_log_format_and_no_gzip():
    out = render_config(ConfigRecord(id="a", log_format="json", gzip=False))
    assert "log_format json escape=json" in out
    assert "access_log /var/log/nginx/access.log json;" in out
    assert "gzip" not in out


def test_http_to_https_redirect_and_default_cert_paths():
    rec = ConfigRecord(id="a", enable_https=True, http_to_https=True)
    out = render_config(rec)
    http_block = out.split("# HTTP server")[1].split("# HTTPS server")[0]
    assert "return 301 https://$host$request_uri;" in http_block
    assert "root " not in http_block
    assert "listen 443 ssl http2;" in out
    assert "ssl_certificate /etc/nginx/ssl/cert.crt;" in out
    assert "ssl_certificate_key /etc/nginx/ssl/cert.key;" in out


def test_resolved_certificate_paths_are_used_verbatim():
    rec = ConfigRecord(id="a", enable_http=False, enable_https=True, certificate_id="c1")
    cert = Certificate(id="c1", cert_file_path="/etc/ssl/site.pem", key_file_path="/etc/ssl/site.key")
    out = render_config(rec, cert)
    assert "ssl_certificate /etc/ssl/site.pem;" in out
    assert "ssl_certificate_key /etc/ssl/site.key;" in out
    assert "# HTTP server" not in out


def test_locations_in_order_with_modifiers():
    rec = ConfigRecord(
        id="a",
        enable_proxy=True,
        locations=[
            LocationRule(path="/api", proxy_pass="http://backend"),
            LocationRule(path="/health", match_type="exact", try_files="/ok.html"),
            LocationRule(path=r"\.png$", match_type="regex", root="/srv/img"),
            LocationRule(path="/static"),
        ],
    )
    out = render_config(rec)
    api = out.index("location /api {")
    health = out.index("location = /health {")
    png = out.index(r"location ~ \.png$ {")
    static = out.index("location /static {")
    assert api < health < png < static
    assert "proxy_pass http://backend;" in out
    assert "proxy_set_header X-Real-IP $remote_addr;" in out
    assert "try_files /ok.html;" in out
    assert "root /srv/img;" in out
    # only the bare /static rule falls back to the default try_files
    assert out.count("try_files $uri $uri/ =404;") == 1


def test_proxy_without_locations_proxies_root():
    out = render_config(ConfigRecord(id="a", enable_proxy=True, proxy_pass="http://127.0.0.1:3000"))
    assert "location / {\n            proxy_pass http://127.0.0.1:3000;" in out


def test_custom_config_is_inserted_verbatim():
    custom = "    upstream app {\n        server 127.0.0.1:9000;\n    }"
    out = render_config(ConfigRecord(id="a", custom_config=custom))
    assert custom in out
    assert out.index(custom) > out.index("# HTTP server")


@pytest.mark.parametrize("record", [
    ConfigRecord(id="a", http_port=0),
    ConfigRecord(id="a", enable_https=True, https_port=-1),
    ConfigRecord(id="a", log_format="combined"),
    ConfigRecord(id="a", enable_proxy=True, locations=[LocationRule(path=" ")]),
])
def test_malformed_records_are_rejected(record):
    with pytest.raises(RenderError):
        render_config(record)


def test_unresolved_certificate_reference_is_rejected():
    rec = ConfigRecord(id="a", enable_https=True, certificate_id="missing")
    with pytest.raises(RenderError, match="missing"):
        render_config(rec, None)
