"""
SQL schema for the remotely managed settings table.
Run these queries in your Supabase SQL editor.
"""

CREATE_APP_SETTINGS_TABLE = """
-- Key-value settings documents (e.g. ai_providers)
CREATE TABLE IF NOT EXISTS app_settings (
    key VARCHAR(100) PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Enable Row Level Security
ALTER TABLE app_settings ENABLE ROW LEVEL SECURITY;

-- Policy: only the service role may read or write provider secrets
CREATE POLICY app_settings_service_role_all ON app_settings
    FOR ALL
    USING (auth.role() = 'service_role');
"""

CREATE_UPDATED_AT_TRIGGER = """
-- Function to update updated_at timestamp
CREATE OR REPLACE FUNCTION update_updated_at_column()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = NOW();
    RETURN NEW;
END;
$$ language 'plpgsql';

-- Trigger for app_settings table
DROP TRIGGER IF EXISTS update_app_settings_updated_at ON app_settings;
CREATE TRIGGER update_app_settings_updated_at
    BEFORE UPDATE ON app_settings
    FOR EACH ROW
    EXECUTE FUNCTION update_updated_at_column();
"""

SEED_AI_PROVIDERS_ROW = """
-- Empty provider settings document; keys are written from the admin console
INSERT INTO app_settings (key, value)
VALUES ('ai_providers', '{"provider_order": ["removebg", "clipdrop"]}'::jsonb)
ON CONFLICT (key) DO NOTHING;
"""

# Combined setup script
FULL_SCHEMA_SETUP = f"""
-- =====================================================
-- Product Image AI Settings Schema Setup
-- =====================================================
-- Run this in your Supabase SQL Editor
-- =====================================================

{CREATE_APP_SETTINGS_TABLE}

{CREATE_UPDATED_AT_TRIGGER}

{SEED_AI_PROVIDERS_ROW}

-- =====================================================
-- Setup Complete!
-- =====================================================
"""

if __name__ == "__main__":
    print(FULL_SCHEMA_SETUP)
