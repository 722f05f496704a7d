"""Tests for the genericity checks applied to the shared pool."""

from lessonbase.validation import suggest_generic_improvements, validate_is_generic


class TestValidateIsGeneric:
    """Test error and warning rules."""

    def test_clean_content_is_valid(self):
        result = validate_is_generic("Wrap multi-step writes in a database transaction.")
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_web_root_path_is_error(self):
        """Paths under /var/www/<project> are project specific."""
        result = validate_is_generic("Logs live in /var/www/anything/x/storage")
        assert not result.is_valid
        assert "Content contains project-specific path (/var/www/...)" in result.errors

    def test_home_directory_path_is_error(self):
        result = validate_is_generic("Run the script from /home/alice/code/tool")
        assert not result.is_valid
        assert "Content contains user-specific path (/home/username/...)" in result.errors

    def test_both_errors_reported(self):
        result = validate_is_generic("/var/www/site and /home/bob/projects")
        assert len(result.errors) == 2

    def test_dev_domain_is_warning_only(self):
        """Development domains warn but never block."""
        for url in ("http://shop.test/login", "https://api.local", "https://app.dev/x"):
            result = validate_is_generic(f"Visit {url} to check")
            assert result.is_valid, url
            assert any("development domain" in w for w in result.warnings)

    def test_project_name_literal_is_warning_only(self):
        result = validate_is_generic("Set APP_NAME to 'My Project Name' in the env file")
        assert result.is_valid
        assert any("project-specific name" in w for w in result.warnings)

    def test_placeholder_name_is_warning(self):
        result = validate_is_generic('Create the app with "my-app" as the folder')
        assert result.is_valid
        assert result.warnings


class TestSuggestGenericImprovements:
    """Test rewrite suggestions."""

    def test_no_suggestions_for_generic_content(self):
        assert suggest_generic_improvements("Keep controllers thin.") == []

    def test_path_suggestions(self):
        suggestions = suggest_generic_improvements("cd /var/www/shop && ls /home/dev/src")
        assert len(suggestions) == 2
        assert all("/path/to/project" in s for s in suggestions)

    def test_domain_suggestion(self):
        suggestions = suggest_generic_improvements("Call https://shop.example to pay")
        assert any("example.com" in s for s in suggestions)
