"""
Feature names and user-facing display strings.

Feature names are the catalog keys stored in tier_feature_definitions and
user_tier_features. Keep them in sync with config/tier_features.yml.
"""

from typing import Dict


class FeatureName:
    """Known feature names."""
    PRODUCT_SLOT = "product_slot"
    CATEGORIES = "categories"
    MAX_FILE_UPLOAD_SIZE_MB = "max_file_upload_size_mb"
    MAX_PRODUCTS_PER_IMPORT = "max_products_per_import"
    PRODUCT_IMPORTS = "product_imports"
    STOCK_MOVEMENT_HISTORY_DAYS = "stock_movement_history_days"
    NOTIFICATION_HISTORY_LIMIT = "notification_history_limit"
    DASHBOARD_CHART_DAYS = "dashboard_chart_days"
    DATA_RETENTION_YEARS = "data_retention_years"
    ANALYTICS_ACCESS = "analytics_access"
    EXPORT_CAPABILITIES = "export_capabilities"
    BULK_OPERATIONS = "bulk_operations"
    SCHEDULED_REPORTS = "scheduled_reports"
    PRIORITY_SUPPORT = "priority_support"
    WHATSAPP_MESSAGES = "whatsapp_messages"


FEATURE_DISPLAY_NAMES: Dict[str, str] = {
    FeatureName.PRODUCT_SLOT: "products",
    FeatureName.CATEGORIES: "categories",
    FeatureName.MAX_FILE_UPLOAD_SIZE_MB: "file upload size",
    FeatureName.MAX_PRODUCTS_PER_IMPORT: "products per import",
    FeatureName.PRODUCT_IMPORTS: "imports",
    FeatureName.STOCK_MOVEMENT_HISTORY_DAYS: "stock movement history",
    FeatureName.NOTIFICATION_HISTORY_LIMIT: "notification history",
    FeatureName.DASHBOARD_CHART_DAYS: "dashboard chart range",
    FeatureName.DATA_RETENTION_YEARS: "data retention",
    FeatureName.ANALYTICS_ACCESS: "analytics",
    FeatureName.EXPORT_CAPABILITIES: "data export",
    FeatureName.BULK_OPERATIONS: "bulk operations",
    FeatureName.SCHEDULED_REPORTS: "scheduled reports",
    FeatureName.PRIORITY_SUPPORT: "priority support",
    FeatureName.WHATSAPP_MESSAGES: "WhatsApp messages",
}

# Benefit shown in "Upgrade to Premium for ..." prompts
UPGRADE_BENEFITS: Dict[str, str] = {
    FeatureName.PRODUCT_SLOT: "unlimited products",
    FeatureName.CATEGORIES: "unlimited categories",
    FeatureName.MAX_FILE_UPLOAD_SIZE_MB: "increased storage",
    FeatureName.ANALYTICS_ACCESS: "advanced analytics",
    FeatureName.PRIORITY_SUPPORT: "priority support",
}


def get_feature_display_name(feature_name: str) -> str:
    """Human-readable name; falls back to the key with underscores spaced."""
    return FEATURE_DISPLAY_NAMES.get(feature_name, feature_name.replace("_", " "))


def get_upgrade_benefit(feature_name: str) -> str:
    return UPGRADE_BENEFITS.get(feature_name, f"more {get_feature_display_name(feature_name)}")
