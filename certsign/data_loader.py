import os

import pandas as pd


# xlsx files are zip archives
ZIP_MAGIC = b"PK\x03\x04"


def _looks_like_excel(path):
    with open(path, "rb") as fh:
        return fh.read(4) == ZIP_MAGIC


def load_data(path: str) -> pd.DataFrame:
    """
    Load a CSV or Excel data file into a DataFrame of strings.

    Handles:
      - .csv files that are actually Excel format (common Canva/Excel export issue)
      - .xlsx and .xls files
      - Whitespace in column names and cell values
      - Missing cells (become "") and completely empty rows (dropped)

    Raises ValueError with a clear message on failure.
    """
    ext = os.path.splitext(path)[1].lower()

    df = None

    if ext == ".csv":
        # Try CSV first; if it is really an xlsx, or CSV parsing fails, try Excel
        try:
            if _looks_like_excel(path):
                raise ValueError("File is actually Excel format")
            df = pd.read_csv(path, engine="python", dtype=str, keep_default_na=False)
        except Exception:
            try:
                df = pd.read_excel(path, engine="openpyxl", dtype=str)
            except Exception as e:
                raise ValueError(
                    f"Could not read '{os.path.basename(path)}'. "
                    f"It appears to be neither valid CSV nor Excel. ({e})"
                )
    elif ext in (".xlsx", ".xls"):
        try:
            df = pd.read_excel(path, engine="openpyxl", dtype=str)
        except Exception as e:
            raise ValueError(
                f"Could not read '{os.path.basename(path)}' as Excel. ({e})"
            )
    else:
        raise ValueError(
            f"Unsupported file type '{ext}'. Please upload a .csv or .xlsx file."
        )

    # ── Clean up ──
    df = df.fillna("")
    df.columns = [str(c).strip() for c in df.columns]

    for col in df.columns:
        df[col] = df[col].astype(str).str.strip()

    # Drop completely empty rows
    df = df[(df != "").any(axis=1)].reset_index(drop=True)

    if len(df) == 0:
        raise ValueError("The data file is empty, no rows to sign.")

    return df


def load_rows(path):
    """Rows of the data file as plain dicts, column name -> cell text."""
    return load_data(path).to_dict(orient="records")
