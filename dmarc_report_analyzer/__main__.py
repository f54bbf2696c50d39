from dmarc_report_analyzer.app import cli

if __name__ == "__main__":
    cli()
