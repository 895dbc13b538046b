"""Tabular export of extracted records (CSV, JSON, Excel)."""

from pathlib import Path
from typing import Sequence

import pandas as pd
from pydantic import BaseModel

from nepse_ingest.exceptions import ExportError
from nepse_ingest.logger import get_logger

log = get_logger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".json", ".xlsx")


class RecordExporter:
    """Writes pydantic records to a file whose suffix selects the format.

    Nested models (a company record's dividends, for instance) are flattened
    with ``pd.json_normalize``; lists stay as JSON-like cell values.

    Example:
        RecordExporter().export(result.items, Path("output/prices.xlsx"))
    """

    def to_dataframe(self, records: Sequence[BaseModel]) -> pd.DataFrame:
        rows = [record.model_dump(mode="json") for record in records]
        return pd.json_normalize(rows) if rows else pd.DataFrame()

    def export(self, records: Sequence[BaseModel], output_path: Path, sheet_name: str = "Data") -> Path:
        """Write ``records`` to ``output_path``.

        Raises:
            ExportError: On an unsupported suffix or any write failure.
        """
        output_path = Path(output_path)
        suffix = output_path.suffix.lower()
        if suffix not in SUPPORTED_SUFFIXES:
            raise ExportError(
                output_path=str(output_path),
                reason=f"Unsupported format '{suffix}', expected one of {', '.join(SUPPORTED_SUFFIXES)}",
            )

        df = self.to_dataframe(records)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if suffix == ".csv":
                df.to_csv(output_path, index=False)
            elif suffix == ".json":
                df.to_json(output_path, orient="records", indent=2, date_format="iso")
            else:
                with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
                    df.to_excel(writer, sheet_name=sheet_name, index=False)
        except (OSError, ValueError) as exc:
            raise ExportError(output_path=str(output_path), reason=str(exc)) from exc

        log.info("Records exported", output_path=str(output_path), rows=len(df), format=suffix[1:])
        return output_path
