SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Accounts: one row per registered user; amounts in micro-units
CREATE TABLE IF NOT EXISTS accounts (
    account_id        TEXT PRIMARY KEY,
    email             TEXT NOT NULL DEFAULT '',
    role              TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    wallet_address    TEXT NOT NULL DEFAULT '',
    total_tokens      INTEGER NOT NULL DEFAULT 0,
    staked_tokens     INTEGER NOT NULL DEFAULT 0 CHECK (staked_tokens >= 0),
    available_tokens  INTEGER NOT NULL DEFAULT 0 CHECK (available_tokens >= 0),
    cash_balance      INTEGER NOT NULL DEFAULT 0 CHECK (cash_balance >= 0),
    referral_earnings INTEGER NOT NULL DEFAULT 0,
    is_active         INTEGER NOT NULL DEFAULT 0,
    referral_code     TEXT NOT NULL UNIQUE,
    referred_by       TEXT,
    api_key           TEXT NOT NULL DEFAULT '',
    created_at        REAL NOT NULL,
    updated_at        REAL NOT NULL,
    CHECK (total_tokens = staked_tokens + available_tokens)
);

-- Ledger entries: append-only; status moves pending -> completed|failed once
CREATE TABLE IF NOT EXISTS ledger_entries (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id      TEXT NOT NULL,
    kind            TEXT NOT NULL CHECK (kind IN ('purchase', 'withdrawal', 'referral_commission',
                                                  'stake_create', 'stake_mature', 'stake_cancel',
                                                  'sale', 'cash_deposit')),
    cash_amount     INTEGER NOT NULL DEFAULT 0,
    token_amount    INTEGER NOT NULL DEFAULT 0,
    price_per_token INTEGER NOT NULL DEFAULT 0,
    status          TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'failed')),
    payment_method  TEXT NOT NULL DEFAULT '',
    external_ref    TEXT,
    reference_id    TEXT NOT NULL DEFAULT '',
    description     TEXT NOT NULL DEFAULT '',
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
);

-- Token prices: one row per calendar day
CREATE TABLE IF NOT EXISTS token_prices (
    date       TEXT PRIMARY KEY,
    price      INTEGER NOT NULL CHECK (price > 0),
    updated_by TEXT NOT NULL DEFAULT '',
    updated_at REAL NOT NULL
);

-- Supply counter: single row
CREATE TABLE IF NOT EXISTS supply_counter (
    id               INTEGER PRIMARY KEY CHECK (id = 1),
    total_supply_cap INTEGER NOT NULL CHECK (total_supply_cap > 0),
    tokens_issued    INTEGER NOT NULL DEFAULT 0,
    updated_at       REAL NOT NULL,
    CHECK (tokens_issued >= 0 AND tokens_issued <= total_supply_cap)
);

-- Staking positions
CREATE TABLE IF NOT EXISTS staking_positions (
    position_id     TEXT PRIMARY KEY,
    account_id      TEXT NOT NULL,
    amount          INTEGER NOT NULL CHECK (amount > 0),
    apy             TEXT NOT NULL,
    lock_years      INTEGER NOT NULL,
    start_date      REAL NOT NULL,
    end_date        REAL NOT NULL,
    status          TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'completed', 'cancelled')),
    rewards_accrued INTEGER NOT NULL DEFAULT 0,
    penalty         INTEGER NOT NULL DEFAULT 0,
    closed_at       REAL,
    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
);

-- Withdrawal requests
CREATE TABLE IF NOT EXISTS withdrawal_requests (
    withdrawal_id       TEXT PRIMARY KEY,
    account_id          TEXT NOT NULL,
    asset               TEXT NOT NULL CHECK (asset IN ('token', 'cash')),
    amount              INTEGER NOT NULL CHECK (amount > 0),
    network             TEXT NOT NULL,
    destination_address TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'approved', 'processing', 'completed', 'rejected')),
    lock_period_days    INTEGER NOT NULL DEFAULT 0,
    requested_at        REAL NOT NULL,
    decided_at          REAL,
    decided_by          TEXT NOT NULL DEFAULT '',
    reason              TEXT NOT NULL DEFAULT '',
    ledger_entry_id     INTEGER,
    tx_hash             TEXT NOT NULL DEFAULT '',
    completed_at        REAL,
    FOREIGN KEY (account_id) REFERENCES accounts(account_id)
);

-- Referral commissions: at most one per (referrer, referred) pair
CREATE TABLE IF NOT EXISTS referral_commissions (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    referrer_id         TEXT NOT NULL,
    referred_account_id TEXT NOT NULL,
    purchase_amount     INTEGER NOT NULL,
    amount              INTEGER NOT NULL,
    percentage          TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid')),
    month               INTEGER NOT NULL,
    year                INTEGER NOT NULL,
    created_at          REAL NOT NULL,
    paid_at             REAL,
    UNIQUE (referrer_id, referred_account_id),
    FOREIGN KEY (referrer_id) REFERENCES accounts(account_id),
    FOREIGN KEY (referred_account_id) REFERENCES accounts(account_id)
);

-- Admin-tunable settings (commission rate, staking APY)
CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_by TEXT NOT NULL DEFAULT '',
    updated_at REAL NOT NULL
);

-- Flagged transfers: admin review queue
CREATE TABLE IF NOT EXISTS flagged_transfers (
    tx_hash      TEXT PRIMARY KEY,
    from_address TEXT NOT NULL,
    to_address   TEXT NOT NULL,
    value        INTEGER NOT NULL,
    block_number INTEGER NOT NULL DEFAULT 0,
    direction    TEXT NOT NULL CHECK (direction IN ('deposit', 'withdrawal')),
    reason       TEXT NOT NULL,
    severity     TEXT NOT NULL CHECK (severity IN ('low', 'medium', 'high', 'critical')),
    account_id   TEXT,
    status       TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved')),
    created_at   REAL NOT NULL,
    resolved_at  REAL,
    resolved_by  TEXT NOT NULL DEFAULT '',
    note         TEXT NOT NULL DEFAULT ''
);

-- Chain transfers observed without a ledger entry (withdrawal confirmations)
CREATE TABLE IF NOT EXISTS chain_transfers (
    tx_hash      TEXT PRIMARY KEY,
    account_id   TEXT NOT NULL,
    direction    TEXT NOT NULL,
    value        INTEGER NOT NULL,
    block_number INTEGER NOT NULL DEFAULT 0,
    processed_at REAL NOT NULL
);

-- Indexes for common queries
CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_external_ref
    ON ledger_entries(external_ref) WHERE external_ref IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_entries_account ON ledger_entries(account_id);
CREATE INDEX IF NOT EXISTS idx_entries_status ON ledger_entries(status);
CREATE INDEX IF NOT EXISTS idx_accounts_wallet ON accounts(wallet_address COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_accounts_api_key ON accounts(api_key);
CREATE INDEX IF NOT EXISTS idx_positions_status_end ON staking_positions(status, end_date);
CREATE INDEX IF NOT EXISTS idx_positions_account ON staking_positions(account_id);
CREATE INDEX IF NOT EXISTS idx_withdrawals_status ON withdrawal_requests(status);
CREATE INDEX IF NOT EXISTS idx_withdrawals_account ON withdrawal_requests(account_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_withdrawals_one_pending
    ON withdrawal_requests(account_id, asset) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_commissions_referrer ON referral_commissions(referrer_id);
CREATE INDEX IF NOT EXISTS idx_flagged_status ON flagged_transfers(status);
"""
