"""
Redmine Export DAG
==================

Daily incremental export of Redmine issues into the warehouse:

1. EXPORT ISSUES     - next issues after the warehouse cursor
2. EXPORT CHANGES    - next journals after the warehouse cursor, in chunks
3. SNAPSHOTS         - daily state rows for completed days, only once
                       both streams are drained

Schedule: Daily at 2am
Runs never overlap (max_active_runs=1); the cursors live in the warehouse,
so a retried task resumes after the last committed batch.
"""

import json
from datetime import datetime, timedelta

from airflow import DAG
from airflow.exceptions import AirflowSkipException
from airflow.operators.python import PythonOperator
from airflow.utils.trigger_rule import TriggerRule

CONFIG_DIR = '/opt/airflow/ingestion/configs'

# Default args
default_args = {
    'owner': 'data-engineering',
    'depends_on_past': False,
    'start_date': datetime(2026, 1, 1),
    'email_on_failure': False,
    'email_on_retry': False,
    'retries': 2,
    'retry_delay': timedelta(minutes=5),
}

# DAG definition
dag = DAG(
    'redmine_export',
    default_args=default_args,
    description='Redmine issues + journal → warehouse, then daily snapshots',
    schedule='0 2 * * *',  # 2am daily
    catchup=False,
    max_active_runs=1,
    tags=['export', 'redmine', 'dwh'],
)


def _run_command(command: str, context) -> list:
    """Run one export command for the run's date and push its results."""
    from ingestion.engine import ExportEngine
    from ingestion.settings import RunConfig, load_task_settings

    run_date = context['data_interval_end'].strftime('%Y-%m-%d')
    config = RunConfig.from_settings(load_task_settings(CONFIG_DIR), {"run_date": run_date})

    results = ExportEngine(config).run(command)
    results = json.loads(json.dumps(results, default=str))

    for result in results:
        print(f"Stage: {result.get('stage')}")
        print(f"  Status: {result.get('status')}")
        print(f"  Rows: {result.get('rows_loaded', 0)}")

    context['ti'].xcom_push(key='results', value=results)

    failed = [r for r in results if r.get('status') == 'failed']
    if failed:
        raise Exception(f"Export {command} failed: {[r.get('error') for r in failed]}")

    return results


def export_issues(**context):
    """Export the next batch of issues."""
    return _run_command('issues', context)


def export_changes(**context):
    """Export the next journals, chunk by chunk."""
    return _run_command('changes', context)


def materialize_snapshots(**context):
    """Materialize daily snapshots once nothing is pending."""
    pending = []
    for task_id in ('export_issues', 'export_changes'):
        results = context['ti'].xcom_pull(key='results', task_ids=task_id) or []
        if any(not r.get('drained', True) for r in results):
            pending.append(task_id)

    if pending:
        raise AirflowSkipException(f"Rows still pending after: {pending}")

    return _run_command('snapshots', context)


def log_export_completion(**context):
    """Log export run summary."""
    rows = {}
    for task_id in ('export_issues', 'export_changes', 'materialize_snapshots'):
        results = context['ti'].xcom_pull(key='results', task_ids=task_id) or []
        rows[task_id] = sum(r.get('rows_loaded', 0) for r in results)

    print("=" * 60)
    print("REDMINE EXPORT COMPLETE")
    print("=" * 60)
    print(f"  Execution date: {context['ds']}")
    for task_id, count in rows.items():
        print(f"  {task_id}: {count:,} rows")
    print("=" * 60)

    return {"execution_date": context['ds'], **rows}


# ==========================================
# TASK DEFINITIONS
# ==========================================

export_issues_task = PythonOperator(
    task_id='export_issues',
    python_callable=export_issues,
    dag=dag,
)

export_changes_task = PythonOperator(
    task_id='export_changes',
    python_callable=export_changes,
    dag=dag,
)

snapshots_task = PythonOperator(
    task_id='materialize_snapshots',
    python_callable=materialize_snapshots,
    dag=dag,
)

log_completion_task = PythonOperator(
    task_id='log_completion',
    python_callable=log_export_completion,
    trigger_rule=TriggerRule.NONE_FAILED,
    dag=dag,
)


# ==========================================
# TASK DEPENDENCIES
# ==========================================

export_issues_task >> export_changes_task >> snapshots_task >> log_completion_task
