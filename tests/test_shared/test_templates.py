"""
Tests for email template rendering.
"""

from datetime import date

from shared.config import DEFAULT_TEMPLATES_DIR
from shared.templates import (
    TEMPLATE_CATALOG,
    TemplateRenderer,
    format_currency,
    format_date,
    render_subject,
)


class TestFormatting:
    """Tests for locale-aware filters."""

    def test_currency_en_us(self):
        assert format_currency(1234.5) == "$1,234.50"
        assert format_currency("59.9") == "$59.90"

    def test_currency_es_pe(self):
        assert format_currency(1234.5, "PEN", "es-PE") == "S/ 1,234.50"

    def test_currency_passthrough_for_non_numbers(self):
        assert format_currency("n/a") == "n/a"
        assert format_currency(None) == ""

    def test_date_long_form(self):
        assert format_date(date(2024, 3, 5)) == "March 5, 2024"
        assert format_date("2024-03-05T10:00:00Z") == "March 5, 2024"
        assert format_date(date(2024, 3, 5), "es-PE") == "5 de marzo de 2024"

    def test_date_unparseable_string_returned_as_is(self):
        assert format_date("next week") == "next week"


class TestRender:
    """Tests for rendering named templates."""

    def test_welcome(self, renderer):
        html = renderer.render("welcome", {"firstName": "Ann", "loginUrl": "https://shop.test/login"})

        assert "Welcome, Ann!" in html
        assert "https://shop.test/login" in html

    def test_order_confirmation_formats_money(self, renderer, order_created_data):
        order = order_created_data["order"]
        html = renderer.render("order-confirmation", {
            "firstName": "Ann",
            "orderId": order["id"],
            "items": order["items"],
            "total": order["total"],
            "orderDate": "2024-03-05",
        })

        assert "#o1" in html
        assert "Coffee mug" in html
        assert "$12.45" in html
        assert "Total: $59.90" in html
        assert "March 5, 2024" in html

    def test_order_confirmation_in_other_locale(self):
        renderer = TemplateRenderer(locale="es-PE", currency="PEN")

        html = renderer.render("order-confirmation", {"orderId": "o1", "total": 1234.5})

        assert "S/ 1,234.50" in html

    def test_values_are_escaped(self, renderer):
        html = renderer.render("welcome", {"firstName": "<script>x</script>"})

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_admin_alert_helpers(self, renderer):
        html = renderer.render("admin-alert", {
            "alertType": "low_stock",
            "message": "Low stock alert: Coffee mug",
            "data": {"threshold": 10, "currentStock": 3},
        })

        assert "#e67e22" in html
        assert "below the configured threshold" in html

    def test_admin_alert_other_type(self, renderer):
        html = renderer.render("admin-alert", {"alertType": "admin_action", "message": "m"})

        assert "#c0392b" in html
        assert "threshold" not in html

    def test_gt_with_missing_value_is_false(self):
        renderer = TemplateRenderer(templates_dir=DEFAULT_TEMPLATES_DIR)

        with_expiry = renderer.render("password-reset", {"resetUrl": "u", "expiresInMinutes": 30})
        without = renderer.render("password-reset", {"resetUrl": "u"})

        assert "expires in 30 minutes" in with_expiry
        assert "expires in" not in without

    def test_unknown_template_uses_generic(self, renderer):
        html = renderer.render("no-such-template", {"orderId": "o1"})

        assert "no-such-template" in html
        assert "orderId" in html
        assert renderer.get_template("no-such-template").origin == "generic"

    def test_generic_shows_content(self, renderer):
        html = renderer.render("custom", {"content": "Plain body"})

        assert "Plain body" in html


class TestTemplateSources:
    """Tests for where template sources come from."""

    def test_file_overrides_builtin(self, tmp_path):
        (tmp_path / "welcome.html").write_text("<p>Hello from disk, {{ firstName }}</p>")
        renderer = TemplateRenderer(templates_dir=tmp_path)

        html = renderer.render("welcome", {"firstName": "Ann"})

        assert html == "<p>Hello from disk, Ann</p>"
        assert renderer.get_template("welcome").origin == "file"

    def test_bundled_file_templates(self):
        renderer = TemplateRenderer(templates_dir=DEFAULT_TEMPLATES_DIR)

        html = renderer.render("order-delivered", {"orderId": "o1", "reviewUrl": "https://shop.test/review"})

        assert "#o1" in html
        assert "leave a review" in html
        assert renderer.get_template("order-delivered").origin == "file"

    def test_missing_file_falls_back_to_builtin(self, tmp_path):
        renderer = TemplateRenderer(templates_dir=tmp_path)

        assert renderer.get_template("order-shipped").origin == "builtin"

    def test_unsafe_name_not_read_from_disk(self, tmp_path):
        (tmp_path / "secret.html").write_text("secret")
        renderer = TemplateRenderer(templates_dir=tmp_path / "sub")

        assert renderer.get_template("../secret").origin == "generic"

    def test_broken_template_yields_diagnostic(self, tmp_path):
        """Test a syntax error never escapes render()."""
        (tmp_path / "broken.html").write_text("{% if %}oops")
        renderer = TemplateRenderer(templates_dir=tmp_path)

        html = renderer.render("broken", {"orderId": "o1"})

        assert "could not be rendered" in html
        assert "TemplateSyntaxError" in html
        assert "o1" in html


class TestCache:
    """Tests for compiled template caching."""

    def test_template_compiled_once(self, renderer):
        first = renderer.get_template("welcome")

        assert renderer.is_cached("welcome")
        assert renderer.get_template("welcome") is first

    def test_invalidate_one(self, renderer):
        renderer.get_template("welcome")
        renderer.get_template("order-shipped")

        assert renderer.invalidate("welcome") == 1
        assert not renderer.is_cached("welcome")
        assert renderer.is_cached("order-shipped")
        assert renderer.invalidate("welcome") == 0

    def test_invalidate_all(self, renderer):
        renderer.get_template("welcome")
        renderer.get_template("order-shipped")

        assert renderer.invalidate() == 2
        assert not renderer.is_cached("order-shipped")

    def test_invalidate_picks_up_edits(self, tmp_path):
        path = tmp_path / "note.html"
        path.write_text("v1")
        renderer = TemplateRenderer(templates_dir=tmp_path)
        assert renderer.render("note") == "v1"

        path.write_text("v2")
        assert renderer.render("note") == "v1"
        renderer.invalidate("note")
        assert renderer.render("note") == "v2"

    def test_preload(self, renderer):
        loaded = renderer.preload()

        assert sorted(loaded) == sorted(TEMPLATE_CATALOG)
        assert all(renderer.is_cached(name) for name in TEMPLATE_CATALOG)


class TestSubjects:
    """Tests for subject lines."""

    def test_subject_with_data(self):
        assert render_subject("order-shipped", {"orderId": "o1"}) == "Your order #o1 has shipped"
        assert render_subject("admin-alert", {"alertType": "low_stock"}) == "[Admin alert] low_stock"

    def test_unknown_template_uses_default(self):
        assert render_subject("custom", {}) == "Notification"
        assert render_subject("custom", {}, default="Hello") == "Hello"

    def test_catalog_lists_six_templates(self, renderer):
        names = [info.name for info in renderer.available_templates()]

        assert names == [
            "welcome", "order-confirmation", "order-shipped",
            "order-delivered", "password-reset", "admin-alert",
        ]
