from deflux.workflow.batch import BatchReport, joint_table, run_studies
from deflux.utils.utils import log_info, log_time


@log_time("Deflux Pipeline")
def run_pipeline(config: dict, max_workers=None) -> BatchReport:
    report = run_studies(config, max_workers=max_workers)

    joint_cfg = config.get("joint") or {}
    results = report.results()
    if joint_cfg.get("path") and len(results) > 1:
        table = joint_table(results, on=joint_cfg.get("on", "feature"))
        table.to_csv(joint_cfg["path"], sep="\t", index=False)
        log_info(f"Joint table: {joint_cfg['path']}")

    return report
