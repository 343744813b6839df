import pytest

from conftest import NGINX_CONF, REDIS_CONF
from host_reconciler.appliers.dialects import DirectiveDialect, NginxDialect, get_dialect


class TestNginx:
    dialect = NginxDialect()

    def test_get(self):
        assert self.dialect.get(NGINX_CONF, "worker_processes") == "1"
        assert self.dialect.get(NGINX_CONF, "events.worker_connections") == "768"
        assert self.dialect.get(NGINX_CONF, "http.keepalive_timeout") == "75"

    def test_commented_directive_is_absent(self):
        assert self.dialect.get(NGINX_CONF, "http.gzip") is None

    def test_set_replaces_in_place(self):
        updated = self.dialect.set(NGINX_CONF, "events.worker_connections", "2048")
        assert "    worker_connections 2048;\n" in updated
        assert updated.count("worker_connections") == 1
        assert "# gzip off;" in updated

    def test_set_inserts_into_block(self):
        updated = self.dialect.set(NGINX_CONF, "http.gzip", "on")
        assert self.dialect.get(updated, "http.gzip") == "on"
        assert "    gzip on;\n}" in updated
        self.dialect.validate(updated)

    def test_set_inserts_top_level(self):
        updated = self.dialect.set(NGINX_CONF, "worker_rlimit_nofile", "65535")
        assert self.dialect.get(updated, "worker_rlimit_nofile") == "65535"
        assert updated.index("worker_rlimit_nofile") < updated.index("events {")

    def test_missing_block(self):
        with pytest.raises(KeyError):
            self.dialect.set(NGINX_CONF, "stream.proxy_timeout", "10s")

    def test_value_cannot_break_syntax(self):
        with pytest.raises(ValueError):
            self.dialect.set(NGINX_CONF, "worker_processes", "1; user root")

    @pytest.mark.parametrize("broken", ["events {\n", "worker_processes 1\n", "}\n"])
    def test_validate_rejects_malformed(self, broken):
        with pytest.raises(ValueError):
            self.dialect.validate(broken)

    def test_has_no_repeated_directives(self):
        with pytest.raises(ValueError, match="no repeated directives"):
            self.dialect.get_all(NGINX_CONF, "http.sendfile")


class TestDirective:
    dialect = DirectiveDialect()

    def test_last_occurrence_wins(self):
        assert self.dialect.get(REDIS_CONF, "save") == "300 100"
        assert self.dialect.get(REDIS_CONF, "maxmemory") is None

    def test_set_collapses_repeated_keys(self):
        updated = self.dialect.set(REDIS_CONF, "save", "900 1 300 10 60 10000")
        assert updated.count("\nsave ") == 1
        assert self.dialect.get(updated, "save") == "900 1 300 10 60 10000"

    def test_set_appends_missing_key(self):
        updated = self.dialect.set(REDIS_CONF, "maxmemory", "256mb")
        assert updated.endswith("maxmemory 256mb\n")
        assert "# maxmemory <bytes>" in updated

    def test_quotes_are_stripped(self):
        assert self.dialect.get('dir "/var/lib/redis"\n', "dir") == "/var/lib/redis"

    def test_repeated_key_reads_every_occurrence(self):
        assert self.dialect.get_all(REDIS_CONF, "save") == ["3600 1", "300 100"]
        assert self.dialect.get_all(REDIS_CONF, "maxmemory") == []

    def test_set_all_writes_one_line_per_value(self):
        updated = self.dialect.set_all(REDIS_CONF, "save", ["900 1", "300 10", "60 10000"])
        assert self.dialect.get_all(updated, "save") == ["900 1", "300 10", "60 10000"]
        assert "save 900 1\nsave 300 10\nsave 60 10000\nappendfsync always\n" in updated
        assert "save 3600 1" not in updated


def test_unknown_dialect():
    with pytest.raises(ValueError):
        get_dialect("toml")
