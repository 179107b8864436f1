"""Execution journal persisted in sqlite."""
import sqlite3
import csv
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional
from loguru import logger

from dexarb.models import ArbitrageOpportunity, ExecutionResult


class ExecutionJournal:
    """Append-only record of every execution attempt outcome."""

    def __init__(self, db_path: str = "data/dexarb.db"):
        """Initialise database connection. Use ":memory:" for a throwaway journal."""
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = None
        self._lock = Lock()
        self._initialize_database()

    def _initialize_database(self):
        """Create tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                opportunity_id TEXT NOT NULL,
                token_in TEXT NOT NULL,
                token_out TEXT NOT NULL,
                source_venue TEXT NOT NULL,
                target_venue TEXT NOT NULL,
                profit_percentage REAL NOT NULL,
                estimated_profit REAL NOT NULL,
                trade_size REAL NOT NULL,
                funding_provider TEXT,
                funding_fee REAL,
                success BOOLEAN NOT NULL,
                tx_ref TEXT,
                error_message TEXT,
                attempts INTEGER NOT NULL,
                executed_at TIMESTAMP NOT NULL
            )
        """)
        self.conn.commit()
        logger.info(f"Execution journal initialised at {self.db_path}")

    def record_execution(self, opportunity: ArbitrageOpportunity, result: ExecutionResult) -> int:
        """Store one execution outcome. Returns the row id."""
        quote = result.funding_quote

        with self._lock:
            cursor = self.conn.execute("""
                INSERT INTO executions (
                    opportunity_id, token_in, token_out, source_venue, target_venue,
                    profit_percentage, estimated_profit, trade_size, funding_provider,
                    funding_fee, success, tx_ref, error_message, attempts, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                opportunity.id,
                opportunity.token_in.symbol or opportunity.token_in.address,
                opportunity.token_out.symbol or opportunity.token_out.address,
                opportunity.source_venue,
                opportunity.target_venue,
                opportunity.profit_percentage,
                opportunity.estimated_profit,
                opportunity.trade_size,
                quote.provider if quote else None,
                quote.fee_amount if quote else None,
                result.success,
                result.tx_ref,
                result.error or None,
                result.attempts,
                datetime.fromtimestamp(result.executed_at).isoformat(),
            ))
            self.conn.commit()
            return cursor.lastrowid

    def get_recent_executions(self, limit: int = 20) -> List[Dict]:
        """Newest executions first."""
        with self._lock:
            cursor = self.conn.execute(
                "SELECT * FROM executions ORDER BY id DESC LIMIT ?", (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict:
        """Aggregate success rate, profit and fees."""
        with self._lock:
            stats = self.conn.execute("""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN success THEN 1 ELSE 0 END) as successful,
                    SUM(CASE WHEN success THEN estimated_profit ELSE 0 END) as total_profit,
                    SUM(CASE WHEN success THEN funding_fee ELSE 0 END) as total_fees,
                    AVG(profit_percentage) as avg_profit_percentage
                FROM executions
            """).fetchone()

        total = stats['total'] or 0
        successful = stats['successful'] or 0
        return {
            'total_executions': total,
            'successful_executions': successful,
            'failed_executions': total - successful,
            'success_rate': successful / total * 100 if total else 0,
            'total_profit': stats['total_profit'] or 0.0,
            'total_fees': stats['total_fees'] or 0.0,
            'avg_profit_percentage': stats['avg_profit_percentage'] or 0.0,
        }

    def export_to_csv(self, output_dir: str = "exports") -> Path:
        """Export the journal to a timestamped CSV file."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_file = output_path / f"executions_{timestamp}.csv"

        with self._lock:
            cursor = self.conn.execute("SELECT * FROM executions ORDER BY id")
            rows = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description]

        with open(output_file, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(columns)
            writer.writerows(tuple(row) for row in rows)

        logger.info(f"Executions exported to {output_file}")
        return output_file

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Execution journal closed")
