SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Providers served by this daemon (id is the on-chain actor id)
CREATE TABLE IF NOT EXISTS providers (
    id               INTEGER PRIMARY KEY,
    owner_address    TEXT NOT NULL UNIQUE,
    operator_address TEXT NOT NULL DEFAULT '',
    details_json     TEXT NOT NULL DEFAULT '{}',
    created_at       REAL NOT NULL
);

-- Product category contracts
CREATE TABLE IF NOT EXISTS product_categories (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    address      TEXT NOT NULL UNIQUE,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at   REAL NOT NULL
);

-- Offers: ids are only unique within a product category
CREATE TABLE IF NOT EXISTS offers (
    id                     INTEGER NOT NULL,
    pc_id                  INTEGER NOT NULL,
    provider_id            INTEGER NOT NULL,
    deployment_params_json TEXT NOT NULL DEFAULT 'null',
    details_json           TEXT NOT NULL DEFAULT '{}',
    created_at             REAL NOT NULL,
    PRIMARY KEY (id, pc_id),
    FOREIGN KEY (pc_id) REFERENCES product_categories(id),
    FOREIGN KEY (provider_id) REFERENCES providers(id)
);

-- Resources: one per agreement, id is the on-chain agreement id
CREATE TABLE IF NOT EXISTS resources (
    id                INTEGER NOT NULL,
    pc_id             INTEGER NOT NULL,
    offer_id          INTEGER NOT NULL,
    provider_id       INTEGER NOT NULL,
    owner_address     TEXT NOT NULL,
    name              TEXT NOT NULL DEFAULT '',
    deployment_status TEXT NOT NULL CHECK (deployment_status IN ('Deploying', 'Running', 'Failed', 'Closed')),
    details_json      TEXT NOT NULL DEFAULT '{}',
    group_name        TEXT NOT NULL DEFAULT 'default',
    is_active         INTEGER NOT NULL DEFAULT 1,
    created_at        REAL NOT NULL,
    updated_at        REAL NOT NULL,
    PRIMARY KEY (id, pc_id),
    FOREIGN KEY (offer_id, pc_id) REFERENCES offers(id, pc_id),
    FOREIGN KEY (provider_id) REFERENCES providers(id)
);

-- Applied chain transactions; hash = '' marks a whole block as done
CREATE TABLE IF NOT EXISTS processed_txs (
    height       INTEGER NOT NULL,
    hash         TEXT NOT NULL,
    is_processed INTEGER NOT NULL DEFAULT 0,
    processed_at REAL NOT NULL,
    PRIMARY KEY (height, hash)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_resources_owner ON resources(owner_address);
CREATE INDEX IF NOT EXISTS idx_resources_active ON resources(is_active);
CREATE INDEX IF NOT EXISTS idx_offers_provider ON offers(provider_id);
CREATE INDEX IF NOT EXISTS idx_processed_txs_height ON processed_txs(height);
"""
